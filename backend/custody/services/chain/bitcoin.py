# backend/custody/services/chain/bitcoin.py
"""
Bitcoin adapter.

Reads go through an Esplora REST API (blockstream.info compatible). Sends use a
bitcoind node whose wallet watches the pool address: the node selects UTXOs
and funds the transaction, and the signature comes from the pool key derived
from our own seed (signrawtransactionwithkey), so the node never holds it.
"""
import logging
from decimal import Decimal

import requests

from custody.core.enums import ChainFamily, Currency
from custody.core.errors import BroadcastFailed, ChainUnavailable
from custody.services.chain.base import (
    ChainAdapter,
    JsonRpcMixin,
    Observation,
    RpcError,
    SignedTransfer,
    TransactionStatus,
)

logger = logging.getLogger(__name__)

# vbytes of a typical 1-in 2-out P2PKH spend
TYPICAL_TX_VSIZE = 226
FEE_TARGET_BLOCKS = "6"
FALLBACK_SAT_PER_VBYTE = Decimal("20")


class BitcoinAdapter(JsonRpcMixin, ChainAdapter):
    family = ChainFamily.UTXO
    currency = Currency.BTC
    decimals = 8

    def __init__(self, api_url: str, rpc_url: str | None = None, rpc_user: str | None = None,
                 rpc_password: str | None = None, **kwargs):
        super().__init__(**kwargs)
        self.api_url = api_url.rstrip("/")
        self.rpc_url = rpc_url
        self.rpc_auth = (rpc_user, rpc_password) if rpc_user else None

    # reads -----------------------------------------------------------------
    def tip_height(self) -> int:
        return int(self._get(f"{self.api_url}/blocks/tip/height").text.strip())

    def _confirmations(self, status: dict, tip: int) -> int:
        if not status.get("confirmed") or status.get("block_height") is None:
            return 0
        return max(tip - int(status["block_height"]) + 1, 0)

    def list_incoming(self, address: str) -> list[Observation]:
        """One observation per output paying `address`, referenced as txid:vout."""
        tip = self.tip_height()
        txs = self._get(f"{self.api_url}/address/{address}/txs").json()

        observations = []
        for tx in txs:
            txid = tx.get("txid", "")
            confirmations = self._confirmations(tx.get("status", {}), tip)
            vin = tx.get("vin") or [{}]
            spenders = [(i.get("prevout") or {}).get("scriptpubkey_address") for i in vin]
            if address in spenders:
                # our own spend; outputs back to the address are change
                continue
            sender = spenders[0]
            for n, out in enumerate(tx.get("vout", [])):
                if out.get("scriptpubkey_address") != address:
                    continue
                value = int(out.get("value", 0))
                observations.append(
                    Observation(
                        currency=self.currency,
                        address=address,
                        amount=self.to_amount(value),
                        external_ref=f"{txid}:{n}",
                        confirmations=confirmations,
                        sender=sender,
                    )
                )
        return observations

    def get_balance_raw(self, address: str) -> int:
        data = self._get(f"{self.api_url}/address/{address}").json()
        stats = data.get("chain_stats", {})
        return int(stats.get("funded_txo_sum", 0)) - int(stats.get("spent_txo_sum", 0))

    def estimate_fee(self) -> Decimal:
        try:
            rates = self._get(f"{self.api_url}/fee-estimates").json()
            sat_per_vbyte = Decimal(str(rates.get(FEE_TARGET_BLOCKS, FALLBACK_SAT_PER_VBYTE)))
        except ChainUnavailable as e:
            logger.warning(f"BTC fee estimate unavailable, using fallback rate: {e}")
            sat_per_vbyte = FALLBACK_SAT_PER_VBYTE
        return self.to_amount(int(sat_per_vbyte * TYPICAL_TX_VSIZE))

    def get_transaction(self, tx_reference: str) -> TransactionStatus:
        try:
            resp = self.http.get(f"{self.api_url}/tx/{tx_reference}/status", timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            raise ChainUnavailable(f"BTC explorer error: {e}")
        if resp.status_code == 404:
            return TransactionStatus(found=False)
        if resp.status_code >= 400:
            raise ChainUnavailable(f"BTC explorer returned HTTP {resp.status_code}")
        status = resp.json()
        confirmations = self._confirmations(status, self.tip_height()) if status.get("confirmed") else 0
        return TransactionStatus(found=True, confirmations=confirmations, succeeded=True)

    # sends -----------------------------------------------------------------
    def build_transfer(self, key, destination: str, amount: Decimal) -> SignedTransfer:
        if not key.wif:
            raise BroadcastFailed("BTC transfer requires a WIF key")
        try:
            unsigned = self._rpc("createrawtransaction", [[], {destination: format(amount, "f")}])
            funded = self._rpc(
                "fundrawtransaction",
                [unsigned, {"changeAddress": key.address, "includeWatching": True}],
            )
            signed = self._rpc("signrawtransactionwithkey", [funded["hex"], [key.wif]])
            if not signed.get("complete"):
                raise BroadcastFailed("BTC transaction could not be fully signed", errors=signed.get("errors"))
            decoded = self._rpc("decoderawtransaction", [signed["hex"]])
        except RpcError as e:
            raise BroadcastFailed(f"BTC transaction build failed: {e.rpc_message}")

        return SignedTransfer(
            currency=self.currency,
            source=key.address,
            destination=destination,
            amount=amount,
            fee=Decimal(str(funded.get("fee", 0))),
            tx_reference=decoded["txid"],
            raw=signed["hex"],
        )

    def broadcast(self, transfer: SignedTransfer) -> str:
        try:
            return self._rpc(
                "sendrawtransaction", [transfer.raw], timeout=self.send_timeout, wrap_transport=False
            )
        except RpcError as e:
            # already in mempool or mined: the same transaction, not a second send
            if "already" in e.rpc_message.lower() or "txn-already-known" in e.rpc_message:
                return transfer.tx_reference
            raise BroadcastFailed(f"BTC broadcast rejected: {e.rpc_message}")
        except requests.exceptions.RequestException as e:
            raise self._send_errors(e, transfer)
        except ChainUnavailable as e:
            raise BroadcastFailed(str(e))
