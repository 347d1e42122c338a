"""ABI helpers.

- Encode constructor and function call payloads straight from ABI JSON,
  without going through ``web3.eth.contract`` classes, so that the same payload
  can be handed to any chain backend

- Merge ABIs of proxies, implementations and diamond facets

- Link Solidity libraries into unlinked bytecode
"""

import re
from typing import Any, Collection, Iterable, Sequence

import eth_abi
from eth_utils import function_abi_to_4byte_selector, keccak
from eth_utils.abi import collapse_if_tuple
from hexbytes import HexBytes

from eth_deploy import compat
from eth_deploy.compat import to_0x_hex


#: Zero address as a string.
ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

#: 32 zero bytes as hex string
ZERO_BYTES32 = "0x" + "00" * 32


class AbiConflict(Exception):
    """Merging ABIs would make one function or event shadow another."""


class LinkingError(Exception):
    """Library placeholder was not found in the bytecode."""


def _complete_entry(entry: dict) -> dict:
    # Hand written and older compiler ABIs leave out empty fields
    return {"type": "function", "name": "", "inputs": [], "outputs": [], **entry}


def get_abi_input_types(entry: dict) -> list[str]:
    """Canonical input types, tuples collapsed to ``(type1,type2)``."""
    return compat.get_abi_input_types(_complete_entry(entry))


def get_abi_output_types(entry: dict) -> list[str]:
    return compat.get_abi_output_types(_complete_entry(entry))


def abi_to_signature(entry: dict) -> str:
    """Get ``name(type1,type2)`` signature of a function, event or error."""
    return compat.abi_to_signature(_complete_entry(entry))


def get_function_selector(entry: dict) -> str:
    """Get 4 byte Solidity function selector as 0x prefixed hex.

    Example:

    .. code-block:: python

        entry = {"type": "function", "name": "transfer", "inputs": [{"type": "address"}, {"type": "uint256"}]}
        assert get_function_selector(entry) == "0xa9059cbb"
    """
    assert entry.get("type", "function") == "function", f"Not a function: {entry}"
    return to_0x_hex(function_abi_to_4byte_selector(_complete_entry(entry)))


def get_function_selectors(abi: list[dict]) -> list[str]:
    """All function selectors in the ABI, in ABI order."""
    return [get_function_selector(e) for e in abi if e.get("type") == "function"]


def get_constructor_abi(abi: list[dict]) -> dict | None:
    for entry in abi:
        if entry.get("type") == "constructor":
            return entry
    return None


def find_function_abi(abi: list[dict], method: str, arg_count: int | None = None) -> dict:
    """Find a function ABI entry by name or by full signature.

    Overloaded functions are disambiguated by the number of arguments.

    :param method:
        Function name like ``transferOwnership`` or signature like ``transferOwnership(address)``

    :param arg_count:
        Number of arguments we are going to call the function with.

    :raise ValueError:
        If there is no such function, or the call is ambiguous.
    """
    functions = [e for e in abi if e.get("type") == "function"]
    if "(" in method:
        candidates = [e for e in functions if abi_to_signature(e) == method]
    else:
        candidates = [e for e in functions if e.get("name") == method]

    if not candidates:
        raise ValueError(f"No method named {method} in ABI")

    if arg_count is not None:
        matching = [e for e in candidates if len(e.get("inputs", [])) == arg_count]
        if not matching:
            expected = ", ".join(str(len(e.get("inputs", []))) for e in candidates)
            raise ValueError(f"Method {method} called with {arg_count} arguments, but the ABI expects {expected}")
        candidates = matching

    if len(candidates) > 1:
        signatures = ", ".join(abi_to_signature(e) for e in candidates)
        raise ValueError(f"Ambiguous method {method}, use a full signature: {signatures}")

    return candidates[0]


def _normalise_value(param: dict, value: Any) -> Any:
    """Convert hex strings to bytes where eth_abi wants bytes.

    Walks the ABI ``components`` of tuples and the item type of arrays.
    """
    abi_type = param["type"]
    if value is None:
        return value
    if abi_type.endswith("]"):
        item = dict(param, type=abi_type[: abi_type.rindex("[")])
        return [_normalise_value(item, v) for v in value]
    if abi_type == "tuple":
        return tuple(_normalise_value(c, v) for c, v in zip(param.get("components", []), value))
    if abi_type.startswith("bytes") and isinstance(value, str):
        return HexBytes(value)
    return value


def encode_abi_args(params: Sequence[dict], args: Sequence[Any]) -> bytes:
    """ABI encode arguments against ABI input entries."""
    assert len(params) == len(args), f"Expected {len(params)} arguments, got {len(args)}"
    types = [collapse_if_tuple(p) for p in params]
    return eth_abi.encode(types, [_normalise_value(p, a) for p, a in zip(params, args)])


def encode_constructor_args(abi: list[dict], args: Sequence[Any]) -> bytes:
    """ABI encode constructor arguments.

    :raise ValueError:
        The number of arguments does not match the constructor.
    """
    constructor = get_constructor_abi(abi)
    params = constructor.get("inputs", []) if constructor else []
    if len(params) != len(args):
        raise ValueError(f"Expected {len(params)} constructor arguments, got {len(args)}")
    if not params:
        return b""
    return encode_abi_args(params, args)


def encode_function_call(abi: list[dict], method: str, args: Sequence[Any]) -> HexBytes:
    """Encode call data for a contract function.

    :return:
        Selector + ABI encoded arguments
    """
    entry = find_function_abi(abi, method, len(args))
    selector = function_abi_to_4byte_selector(_complete_entry(entry))
    return HexBytes(selector + encode_abi_args(entry.get("inputs", []), args))


def decode_function_output(entry: dict, data: bytes) -> Any:
    """Decode ``eth_call`` result.

    :return:
        ``None`` for functions without outputs,
        the value itself for single output functions,
        tuple otherwise.
    """
    types = get_abi_output_types(entry)
    if not types:
        return None
    values = eth_abi.decode(types, bytes(data))
    if len(values) == 1:
        return values[0]
    return values


def filter_abi(abi: list[dict], exclude_selectors: Collection[str]) -> list[dict]:
    """Drop functions by their selector."""
    excluded = {s.lower() for s in exclude_selectors}
    return [e for e in abi if not (e.get("type") == "function" and get_function_selector(e) in excluded)]


def _fragment_key(entry: dict) -> tuple:
    entry_type = entry.get("type", "function")
    if entry_type == "function":
        return entry_type, get_function_selector(entry)
    if entry_type in ("event", "error"):
        return entry_type, abi_to_signature(entry)
    # constructor, fallback, receive
    return (entry_type,)


def merge_abis(abis: Iterable[list[dict]], check=True, skip_supports_interface=True) -> list[dict]:
    """Merge several ABIs to a single ABI.

    Used when the proxy ABI is merged with its implementation, or when diamond facets are merged together.
    The first ABI wins.

    :param check:
        Raise if two ABIs define the same function selector, event or error.

    :param skip_supports_interface:
        ``supportsInterface`` is implemented by proxies and implementations both,
        do not consider it as a conflict.

    :raise AbiConflict:
        When ``check`` is set and the ABIs overlap.
    """
    result: list[dict] = []
    seen: dict[tuple, dict] = {}
    for abi in abis:
        for entry in abi:
            key = _fragment_key(entry)
            existing = seen.get(key)
            if existing is not None:
                # constructor, fallback and receive: first one wins
                if check and len(key) > 1:
                    if skip_supports_interface and entry.get("name") == "supportsInterface":
                        continue
                    raise AbiConflict(f"{entry.get('type', 'function')} {abi_to_signature(entry)} will shadow {abi_to_signature(existing)}. Please update code to avoid conflict.")
                continue
            seen[key] = entry
            result.append(entry)
    return result


def get_library_placeholder(library_name: str) -> str:
    """Solidity >= 0.5 library placeholder body for a fully qualified library name.

    Names wrapped in ``$`` are taken as an already hashed placeholder.
    """
    if library_name.startswith("$") and library_name.endswith("$"):
        return library_name[1:-1]
    return keccak(text=library_name).hex()[:34]


def link_raw_library(bytecode: str, library_name: str, library_address: str) -> str:
    """Replace ``__$<hash>$__`` placeholders with the library address.

    :raise LinkingError:
        If the placeholder is not present in the bytecode.
    """
    address = library_address.lower().replace("0x", "")
    encoded = get_library_placeholder(library_name)
    pattern = re.compile(rf"_+\${re.escape(encoded)}\$_+")
    if not pattern.search(bytecode):
        raise LinkingError(f"Can't link '{library_name}' ({encoded}) in bytecode")
    return pattern.sub(address, bytecode)


def link_libraries(bytecode: str, link_references: dict | None, libraries: dict[str, str] | None) -> str:
    """Link Solidity libraries into bytecode.

    Uses Hardhat/solc ``linkReferences`` byte offsets when available.
    Without link references, libraries are linked by
    searching their placeholder in the raw bytecode.

    :param bytecode:
        Raw bytecode of a Solidity contract as a hex string.
        Bytecode must be a in string format, because placeholders are not parseable hex.

    :param link_references:
        ``{source file: {library name: [{start, length}]}}`` from the compiler output

    :param libraries:
        Library name -> deployed address

    :return:
        Linked bytecode as 0x prefixed hex string
    """
    assert type(bytecode) == str, f"Got {type(bytecode)}"

    if not libraries:
        return bytecode

    if link_references:
        hex_blob = bytecode[2:] if bytecode.startswith("0x") else bytecode
        for file_references in link_references.values():
            for library_name, fixups in file_references.items():
                address = libraries.get(library_name)
                if address is None:
                    continue
                address_hex = address.lower().replace("0x", "")
                for fixup in fixups:
                    # Offsets are in bytes, the string is hex
                    start = fixup["start"] * 2
                    length = fixup["length"] * 2
                    hex_blob = hex_blob[:start] + address_hex[-length:].rjust(length, "0") + hex_blob[start + length:]
        return "0x" + hex_blob

    for library_name, address in libraries.items():
        bytecode = link_raw_library(bytecode, library_name, address)

    return bytecode


def present_solidity_args(args: Sequence[Any]) -> str:
    """Format function arguments for logging."""

    def _format(a):
        if isinstance(a, (bytes, bytearray)):
            return to_0x_hex(a)
        if isinstance(a, (list, tuple)):
            return "[" + ", ".join(_format(x) for x in a) + "]"
        return str(a)

    return ", ".join(_format(a) for a in args)
