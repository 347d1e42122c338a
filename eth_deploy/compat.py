"""web3.py v6/v7 compatibility helpers.

- web3.py 7 moved some internal modules around

- hexbytes 1.x dropped the ``0x`` prefix from ``HexBytes.hex()``

- ABI signature helpers live in eth_utils on web3.py 7, partially in web3 internals on web3.py 6
"""

import datetime
from importlib.metadata import version

from packaging.version import Version

pkg_version = version("web3")
WEB3_PY_V7 = Version(pkg_version) >= Version("7.0.0")


def native_datetime_utc_now() -> datetime.datetime:
    """Get current UTC time as a native datetime object.

    Replacement for the deprecated ``datetime.datetime.utcnow()``.
    """
    return datetime.datetime.now(datetime.timezone.utc).replace(tzinfo=None)


def to_0x_hex(value: bytes | str) -> str:
    """Format bytes as 0x prefixed lowercase hex string.

    Works the same regardless of installed ``hexbytes`` version.

    :param value:
        Bytes, HexBytes or already formatted hex string.
    """
    if isinstance(value, str):
        if value.startswith("0x") or value.startswith("0X"):
            return "0x" + value[2:].lower()
        return "0x" + value.lower()
    return "0x" + bytes(value).hex()


# Version-based aliasing
if WEB3_PY_V7:
    from eth_utils.abi import abi_to_signature as _abi_to_signature
    from eth_utils.abi import get_abi_input_types as _get_abi_input_types
    from eth_utils.abi import get_abi_output_types as _get_abi_output_types
else:
    from eth_utils.abi import _abi_to_signature
    from web3._utils.abi import get_abi_input_types as _get_abi_input_types
    from web3._utils.abi import get_abi_output_types as _get_abi_output_types

abi_to_signature = _abi_to_signature
get_abi_input_types = _get_abi_input_types
get_abi_output_types = _get_abi_output_types
