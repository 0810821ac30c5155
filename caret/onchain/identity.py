"""Deterministic per-(user, agent) accounts.

The actor key is keccak256 of the seed; the escrow is the CREATE2 address the
escrow factory deploys for ``salt = keccak256(seed)``. Both depend only on the
seed and static configuration, so they can be recomputed at any time.
"""

from typing import Optional

from eth_account import Account
from eth_account.signers.local import LocalAccount
from eth_utils import keccak, to_bytes, to_checksum_address

from caret.config import settings


def actor_seed(user_id: int, agent_name: str) -> str:
    return f"{user_id}_{agent_name}"


def derive_actor(seed: str) -> LocalAccount:
    return Account.from_key(keccak(text=seed))


def create2_address(factory: str, salt: bytes, init_code_hash: bytes) -> str:
    digest = keccak(b"\xff" + to_bytes(hexstr=factory) + salt + init_code_hash)
    return to_checksum_address(digest[12:])


def derive_escrow_address(
    user_id: int,
    agent_name: str,
    factory: Optional[str] = None,
    init_code_hash: Optional[str] = None,
) -> str:
    factory = factory or settings.escrow_factory
    init_code_hash = init_code_hash or settings.escrow_init_code_hash
    if not factory or not init_code_hash:
        raise RuntimeError("ESCROW_FACTORY / ESCROW_INIT_CODE_HASH is not configured")
    salt = keccak(text=actor_seed(user_id, agent_name))
    return create2_address(factory, salt, to_bytes(hexstr=init_code_hash))
