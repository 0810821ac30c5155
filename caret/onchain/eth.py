import logging
from decimal import ROUND_DOWN, Decimal
from typing import Dict, Optional

from eth_account.signers.local import LocalAccount
from web3 import AsyncHTTPProvider, AsyncWeb3

from caret.config import settings
from caret.errors import TransactionFailed
from caret.onchain.abi import ERC20_ABI, ESCROW_ABI, TRADABLE_TOKEN_ABI

logger = logging.getLogger("caret.chain")

_w3: Optional[AsyncWeb3] = None


def w3() -> AsyncWeb3:
    global _w3
    if _w3 is None:
        if not settings.rpc_url:
            raise RuntimeError("RPC_URL is not configured")
        _w3 = AsyncWeb3(
            AsyncHTTPProvider(settings.rpc_url, request_kwargs={"timeout": settings.rpc_timeout_sec})
        )
    return _w3


def to_base_units(amount: float, decimals: int) -> int:
    """Human amount to integer base units, truncating extra precision."""
    scaled = Decimal(str(amount)) * (Decimal(10) ** decimals)
    return int(scaled.to_integral_value(rounding=ROUND_DOWN))


def from_base_units(units: int, decimals: int) -> Decimal:
    return Decimal(units) / (Decimal(10) ** decimals)


class ChainGateway:
    """Reads and signed writes against the configured EVM chain.

    Writes are signed locally by the actor account, sent raw, and awaited
    until a receipt is available. A reverted receipt or RPC error raises
    ``TransactionFailed`` tagged with the step name.
    """

    def __init__(self, web3: Optional[AsyncWeb3] = None, chain_id: Optional[int] = None):
        self._web3 = web3
        self.chain_id = chain_id or settings.chain_id
        self._decimals: Dict[str, int] = {}

    @property
    def web3(self) -> AsyncWeb3:
        if self._web3 is None:
            self._web3 = w3()
        return self._web3

    def _erc20(self, address: str, abi=ERC20_ABI):
        return self.web3.eth.contract(address=AsyncWeb3.to_checksum_address(address), abi=abi)

    async def is_connected(self) -> bool:
        return await self.web3.is_connected()

    # --- reads ---

    async def decimals(self, asset: str) -> int:
        if asset not in self._decimals:
            self._decimals[asset] = int(await self._erc20(asset).functions.decimals().call())
        return self._decimals[asset]

    async def balance_of(self, asset: str, owner: str) -> int:
        owner = AsyncWeb3.to_checksum_address(owner)
        return int(await self._erc20(asset).functions.balanceOf(owner).call())

    async def native_balance(self, address: str) -> int:
        return int(await self.web3.eth.get_balance(AsyncWeb3.to_checksum_address(address)))

    async def allowance(self, asset: str, owner: str, spender: str) -> int:
        fn = self._erc20(asset).functions.allowance(
            AsyncWeb3.to_checksum_address(owner), AsyncWeb3.to_checksum_address(spender)
        )
        return int(await fn.call())

    async def balance(self, asset: str, owner: str) -> Decimal:
        """Balance in human units, scaled by the asset's on-chain decimals."""
        units = await self.balance_of(asset, owner)
        return from_base_units(units, await self.decimals(asset))

    # --- writes ---

    async def _send(self, step: str, account: LocalAccount, call) -> str:
        tx_hash = None
        try:
            nonce = await self.web3.eth.get_transaction_count(account.address, "pending")
            tx = await call.build_transaction(
                {"from": account.address, "nonce": nonce, "chainId": self.chain_id}
            )
            signed = account.sign_transaction(tx)
            tx_hash = (await self.web3.eth.send_raw_transaction(signed.raw_transaction)).to_0x_hex()
            logger.info(f"[chain] {step} submitted: {tx_hash}")
            receipt = await self.web3.eth.wait_for_transaction_receipt(tx_hash)
        except Exception as e:
            raise TransactionFailed(step, str(e), tx_hash) from e
        if receipt["status"] != 1:
            raise TransactionFailed(step, "transaction reverted", tx_hash)
        logger.info(f"[chain] {step} confirmed: {tx_hash}")
        return tx_hash

    async def fund_actor(self, account: LocalAccount, escrow: str, asset: str, amount: int) -> str:
        contract = self.web3.eth.contract(
            address=AsyncWeb3.to_checksum_address(escrow), abi=ESCROW_ABI
        )
        call = contract.functions.fundActor(AsyncWeb3.to_checksum_address(asset), amount)
        return await self._send("fundActor", account, call)

    async def approve(self, account: LocalAccount, asset: str, spender: str, amount: int) -> str:
        call = self._erc20(asset).functions.approve(AsyncWeb3.to_checksum_address(spender), amount)
        return await self._send("approve", account, call)

    async def trade(
        self,
        account: LocalAccount,
        token: str,
        trade_type: str,
        token_amount: int,
        funding_amount: int,
    ) -> str:
        contract = self._erc20(token, abi=TRADABLE_TOKEN_ABI)
        if trade_type == "buy":
            call = contract.functions.buy(token_amount, funding_amount)
        else:
            call = contract.functions.sell(token_amount, funding_amount)
        return await self._send(trade_type, account, call)
