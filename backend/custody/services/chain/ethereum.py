# backend/custody/services/chain/ethereum.py
"""
Ethereum adapters (native ETH and the USDT ERC-20 token) over JSON-RPC.

Display addresses are balance-diff watched: deposits there are detected by
polling balances. Pool addresses are block-scanned (block transactions for ETH,
Transfer logs for the token). Transfers are signed locally with eth-account so
the transaction hash is known before anything is sent.
"""
import logging
from decimal import Decimal

import requests
from eth_account import Account
from eth_utils import to_checksum_address

from custody.core.enums import ChainFamily, Currency
from custody.core.errors import BroadcastFailed, BroadcastTimeout, ChainUnavailable
from custody.services.chain.base import (
    ChainAdapter,
    JsonRpcMixin,
    Observation,
    RpcError,
    SignedTransfer,
    TransactionStatus,
)

logger = logging.getLogger(__name__)

NATIVE_TRANSFER_GAS = 21000
TOKEN_TRANSFER_GAS = 65000
ERC20_BALANCE_OF = "0x70a08231"
ERC20_TRANSFER = "0xa9059cbb"
# this very transaction is already in the node's pool
ALREADY_KNOWN = ("already known", "known transaction")
# some transaction used the nonce; only a receipt tells whether it was this one
NONCE_TOO_LOW = "nonce too low"
TRANSFER_TOPIC = "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"


def _word(value: int) -> str:
    return format(value, "064x")


def _address_word(address: str) -> str:
    return address.lower().removeprefix("0x").rjust(64, "0")


def _hex_to_int(value: str | None) -> int:
    return int(value, 16) if value else 0


class EthereumAdapter(JsonRpcMixin, ChainAdapter):
    family = ChainFamily.EVM
    currency = Currency.ETH
    decimals = 18
    gas_limit = NATIVE_TRANSFER_GAS

    def __init__(self, rpc_url: str | None, chain_id: int = 1, **kwargs):
        super().__init__(**kwargs)
        self.rpc_url = rpc_url
        self.chain_id = chain_id

    # reads -----------------------------------------------------------------
    def get_balance_raw(self, address: str) -> int:
        return _hex_to_int(self._rpc("eth_getBalance", [address, "latest"]))

    def get_native_balance(self, address: str) -> Decimal:
        wei = _hex_to_int(self._rpc("eth_getBalance", [address, "latest"]))
        return (Decimal(wei) / Decimal(10**18)).quantize(Decimal("0.00000001"))

    def get_fee_balance(self, address: str) -> Decimal:
        return self.get_native_balance(address)

    def gas_price(self) -> int:
        return _hex_to_int(self._rpc("eth_gasPrice", []))

    def estimate_fee_wei(self) -> int:
        return self.gas_price() * self.gas_limit

    def estimate_fee(self) -> Decimal:
        return (Decimal(self.estimate_fee_wei()) / Decimal(10**18)).quantize(Decimal("0.00000001"))

    def block_number(self) -> int:
        return _hex_to_int(self._rpc("eth_blockNumber", []))

    def get_transaction(self, tx_reference: str) -> TransactionStatus:
        receipt = self._rpc("eth_getTransactionReceipt", [tx_reference])
        if not receipt:
            return TransactionStatus(found=False)
        latest = self.block_number()
        block = _hex_to_int(receipt.get("blockNumber"))
        return TransactionStatus(
            found=True,
            confirmations=max(latest - block + 1, 0),
            succeeded=receipt.get("status") == "0x1",
        )

    def scan_incoming(self, address: str, from_block: int, to_block: int, tip: int) -> list[Observation]:
        """Successful top-level transactions sending ETH to `address`, referenced by hash."""
        target = address.lower()
        observations = []
        for number in range(from_block, to_block + 1):
            block = self._rpc("eth_getBlockByNumber", [hex(number), True])
            if not block:
                raise ChainUnavailable(f"ETH block {number} is not available yet")
            for tx in block.get("transactions") or []:
                if (tx.get("to") or "").lower() != target:
                    continue
                value = _hex_to_int(tx.get("value"))
                if value <= 0:
                    continue
                receipt = self._rpc("eth_getTransactionReceipt", [tx["hash"]])
                if not receipt:
                    raise ChainUnavailable(f"ETH receipt for {tx['hash']} is not available yet")
                if receipt.get("status") != "0x1":
                    continue
                observations.append(
                    Observation(
                        currency=self.currency,
                        address=address,
                        amount=self.to_amount(value),
                        external_ref=tx["hash"].lower(),
                        confirmations=max(tip - number + 1, 0),
                        sender=to_checksum_address(tx["from"]) if tx.get("from") else None,
                        block=number,
                    )
                )
        return observations

    # sends -----------------------------------------------------------------
    def _tx_fields(self, source: str, destination: str, amount: Decimal) -> dict:
        return {"to": to_checksum_address(destination), "value": self.to_raw(amount), "data": "0x"}

    def build_transfer(self, key, destination: str, amount: Decimal, gas_price: int | None = None) -> SignedTransfer:
        gas_price = gas_price or self.gas_price()
        nonce = _hex_to_int(self._rpc("eth_getTransactionCount", [key.address, "pending"]))
        tx = {
            **self._tx_fields(key.address, destination, amount),
            "gas": self.gas_limit,
            "gasPrice": gas_price,
            "nonce": nonce,
            "chainId": self.chain_id,
        }
        signed = Account.sign_transaction(tx, "0x" + key.private_key_hex)
        return SignedTransfer(
            currency=self.currency,
            source=key.address,
            destination=destination,
            amount=amount,
            fee=(Decimal(gas_price * self.gas_limit) / Decimal(10**18)).quantize(Decimal("0.00000001")),
            tx_reference="0x" + bytes(signed.hash).hex(),
            raw="0x" + bytes(signed.raw_transaction).hex(),
        )

    def broadcast(self, transfer: SignedTransfer) -> str:
        try:
            return self._rpc(
                "eth_sendRawTransaction", [transfer.raw], timeout=self.send_timeout, wrap_transport=False
            )
        except RpcError as e:
            message = e.rpc_message.lower()
            if any(marker in message for marker in ALREADY_KNOWN):
                logger.warning(f"{self.currency.value} tx {transfer.tx_reference} already known to the node")
                return transfer.tx_reference
            if NONCE_TOO_LOW in message:
                return self._nonce_spent(transfer)
            raise BroadcastFailed(f"{self.currency.value} broadcast rejected: {e.rpc_message}")
        except requests.exceptions.RequestException as e:
            raise self._send_errors(e, transfer)
        except ChainUnavailable as e:
            raise BroadcastFailed(str(e))

    def _nonce_spent(self, transfer: SignedTransfer) -> str:
        """The nonce is used: success only if the transaction that used it is this one."""
        try:
            status = self.get_transaction(transfer.tx_reference)
        except ChainUnavailable:
            # unknown either way; recovery settles it from the stored hash
            raise BroadcastTimeout(
                f"{self.currency.value} nonce already used, receipt lookup failed",
                tx_reference=transfer.tx_reference,
            )
        if status.found:
            logger.warning(f"{self.currency.value} tx {transfer.tx_reference} was already mined")
            return transfer.tx_reference
        raise BroadcastFailed(
            f"{self.currency.value} nonce of {transfer.tx_reference} was used by another transaction"
        )


class Erc20Adapter(EthereumAdapter):
    """Token balances and transfers; fees are still paid in ETH."""
    currency = Currency.USDT
    decimals = 6
    native_asset = False
    gas_limit = TOKEN_TRANSFER_GAS

    def __init__(self, rpc_url: str | None, contract_address: str, chain_id: int = 1, **kwargs):
        super().__init__(rpc_url, chain_id=chain_id, **kwargs)
        self.contract_address = to_checksum_address(contract_address)

    def get_balance_raw(self, address: str) -> int:
        data = ERC20_BALANCE_OF + _address_word(address)
        return _hex_to_int(self._rpc("eth_call", [{"to": self.contract_address, "data": data}, "latest"]))

    def _tx_fields(self, source: str, destination: str, amount: Decimal) -> dict:
        data = ERC20_TRANSFER + _address_word(destination) + _word(self.to_raw(amount))
        return {"to": self.contract_address, "value": 0, "data": data}

    def scan_incoming(self, address: str, from_block: int, to_block: int, tip: int) -> list[Observation]:
        """Token Transfer logs paying `address`, referenced as txhash:logIndex."""
        logs = self._rpc(
            "eth_getLogs",
            [{
                "fromBlock": hex(from_block),
                "toBlock": hex(to_block),
                "address": self.contract_address,
                "topics": [TRANSFER_TOPIC, None, "0x" + _address_word(address)],
            }],
        )
        observations = []
        for log in logs or []:
            topics = log.get("topics") or []
            if log.get("removed") or len(topics) < 3:
                continue
            value = _hex_to_int(log.get("data"))
            if value <= 0:
                continue
            number = _hex_to_int(log.get("blockNumber"))
            observations.append(
                Observation(
                    currency=self.currency,
                    address=address,
                    amount=self.to_amount(value),
                    external_ref=f"{log['transactionHash'].lower()}:{_hex_to_int(log.get('logIndex'))}",
                    confirmations=max(tip - number + 1, 0),
                    sender=to_checksum_address("0x" + topics[1][-40:]),
                    block=number,
                )
            )
        return observations
