"""ABI encoding, merging and library linking."""
import eth_abi
import pytest
from eth_utils import keccak
from hexbytes import HexBytes

from eth_deploy.abi import (
    AbiConflict,
    LinkingError,
    abi_to_signature,
    decode_function_output,
    encode_constructor_args,
    encode_function_call,
    filter_abi,
    find_function_abi,
    get_function_selector,
    get_function_selectors,
    get_library_placeholder,
    link_libraries,
    link_raw_library,
    merge_abis,
)

TRANSFER = {
    "type": "function",
    "name": "transfer",
    "inputs": [{"name": "to", "type": "address"}, {"name": "amount", "type": "uint256"}],
    "outputs": [{"name": "", "type": "bool"}],
}

DIAMOND_CUT = {
    "type": "function",
    "name": "diamondCut",
    "inputs": [
        {
            "name": "_diamondCut",
            "type": "tuple[]",
            "components": [
                {"name": "facetAddress", "type": "address"},
                {"name": "action", "type": "uint8"},
                {"name": "functionSelectors", "type": "bytes4[]"},
            ],
        },
        {"name": "_init", "type": "address"},
        {"name": "_calldata", "type": "bytes"},
    ],
    "outputs": [],
}

SUPPORTS_INTERFACE = {
    "type": "function",
    "name": "supportsInterface",
    "inputs": [{"name": "id", "type": "bytes4"}],
    "outputs": [{"name": "", "type": "bool"}],
}


def test_function_selector():
    """Well known selectors match."""
    assert get_function_selector(TRANSFER) == "0xa9059cbb"
    assert get_function_selector(DIAMOND_CUT) == "0x1f931c1c"
    assert get_function_selectors([TRANSFER, {"type": "event", "name": "Transfer", "inputs": []}]) == ["0xa9059cbb"]


def test_signature_with_tuples():
    """Tuple arguments are collapsed in the canonical signature."""
    assert abi_to_signature(DIAMOND_CUT) == "diamondCut((address,uint8,bytes4[])[],address,bytes)"
    assert abi_to_signature({"type": "function", "name": "f", "inputs": [{"type": "tuple", "components": [{"type": "uint256"}]}]}) == "f((uint256))"


def test_find_overloaded_function():
    """Overloads are picked by the argument count, or by the full signature."""
    one = {"type": "function", "name": "mint", "inputs": [{"type": "uint256"}], "outputs": []}
    two = {"type": "function", "name": "mint", "inputs": [{"type": "address"}, {"type": "uint256"}], "outputs": []}
    abi = [one, two]
    assert find_function_abi(abi, "mint", 1) is one
    assert find_function_abi(abi, "mint", 2) is two
    assert find_function_abi(abi, "mint(address,uint256)") is two

    with pytest.raises(ValueError):
        find_function_abi(abi, "mint")

    with pytest.raises(ValueError):
        find_function_abi(abi, "mint", 3)

    with pytest.raises(ValueError):
        find_function_abi(abi, "burn", 1)


def test_encode_function_call_with_tuples():
    """Hex strings are accepted for bytes types."""
    facet = "0x" + "11" * 20
    data = encode_function_call([DIAMOND_CUT], "diamondCut", [[(facet, 0, ["0xa9059cbb"])], "0x" + "00" * 20, "0x"])
    assert data[:4] == HexBytes("0x1f931c1c")
    cuts, init, calldata = eth_abi.decode(["(address,uint8,bytes4[])[]", "address", "bytes"], bytes(data[4:]))
    assert cuts[0][0] == facet
    assert cuts[0][2] == (HexBytes("0xa9059cbb"),)
    assert calldata == b""


def test_encode_constructor_args():
    abi = [{"type": "constructor", "inputs": [{"type": "uint256"}, {"type": "uint256"}]}]
    assert encode_constructor_args(abi, [1, 2]) == eth_abi.encode(["uint256", "uint256"], [1, 2])
    assert encode_constructor_args([], []) == b""

    with pytest.raises(ValueError):
        encode_constructor_args(abi, [1])


def test_decode_function_output():
    assert decode_function_output(TRANSFER, eth_abi.encode(["bool"], [True])) is True
    assert decode_function_output(DIAMOND_CUT, b"") is None
    pair = {"type": "function", "name": "pair", "inputs": [], "outputs": [{"type": "uint256"}, {"type": "address"}]}
    assert decode_function_output(pair, eth_abi.encode(["uint256", "address"], [5, "0x" + "22" * 20])) == (5, "0x" + "22" * 20)


def test_merge_abis_conflict():
    """The same selector twice is a conflict, unless checks are off."""
    with pytest.raises(AbiConflict):
        merge_abis([[TRANSFER], [dict(TRANSFER)]])

    merged = merge_abis([[TRANSFER], [dict(TRANSFER, outputs=[])]], check=False)
    assert merged == [TRANSFER]


def test_merge_abis_supports_interface():
    """Proxies and implementations both implement ERC-165."""
    merged = merge_abis([[SUPPORTS_INTERFACE], [SUPPORTS_INTERFACE, TRANSFER]])
    assert merged == [SUPPORTS_INTERFACE, TRANSFER]

    with pytest.raises(AbiConflict):
        merge_abis([[SUPPORTS_INTERFACE], [SUPPORTS_INTERFACE]], skip_supports_interface=False)


def test_merge_abis_first_constructor_wins():
    first = {"type": "constructor", "inputs": [{"type": "address"}]}
    second = {"type": "constructor", "inputs": []}
    assert merge_abis([[first], [second]]) == [first]


def test_filter_abi():
    assert filter_abi([TRANSFER, DIAMOND_CUT], ["0xA9059CBB"]) == [DIAMOND_CUT]


def test_link_libraries_with_link_references():
    """Link references give byte offsets of the placeholders."""
    placeholder = "__$" + get_library_placeholder("contracts/Math.sol:Math") + "$__"
    bytecode = "0x6000" + placeholder + "00"
    references = {"contracts/Math.sol": {"Math": [{"start": 2, "length": 20}]}}
    library = "0x" + "ab" * 20
    linked = link_libraries(bytecode, references, {"Math": library})
    assert linked == "0x6000" + "ab" * 20 + "00"


def test_link_raw_library():
    """Without link references, placeholders are searched in the bytecode."""
    placeholder_hash = keccak(text="contracts/Math.sol:Math").hex()[:34]
    bytecode = "0x6000__$" + placeholder_hash + "$__00"
    library = "0x" + "CD" * 20
    assert link_raw_library(bytecode, "contracts/Math.sol:Math", library) == "0x6000" + "cd" * 20 + "00"
    assert link_libraries(bytecode, None, {"contracts/Math.sol:Math": library}) == "0x6000" + "cd" * 20 + "00"

    with pytest.raises(LinkingError):
        link_raw_library(bytecode, "contracts/Other.sol:Other", library)


def test_link_nothing():
    assert link_libraries("0x6000", {}, {}) == "0x6000"
