import json
from functools import cache
from pathlib import Path

from eth_account import Account
from eth_account.signers.local import LocalAccount

from ..errors import ConfigurationError

ABI_DIR = Path(__file__).parent.parent / "abi"

GATEWAY_CONTRACT = "IXFIGateway"


@cache
def get_contract_abi(contract_name: str = GATEWAY_CONTRACT) -> list:
    """Fetches ABI of the given contract from the packaged abi folder"""
    contract_path = (ABI_DIR / f"{contract_name}.json").resolve()

    with contract_path.open() as file:
        contract_data = json.load(file)

    return contract_data["abi"]


def load_relayer_account(secret: str) -> LocalAccount:
    """Build the relayer signer from its private key."""
    if not secret:
        raise ConfigurationError(
            "Missing relayer private key. Please set RELAYER_PRIVATE_KEY."
        )
    return Account.from_key(secret)
