import re

from referral_engine.core.exceptions import bad_request

ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")


def normalize_address(address: str) -> str:
    """Validate a wallet address and lowercase it. Raises HTTP 400 when malformed."""
    address = (address or "").strip()
    if not ADDRESS_RE.match(address):
        raise bad_request("Invalid address")
    return address.lower()
