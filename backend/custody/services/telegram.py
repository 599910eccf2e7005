# backend/custody/services/telegram.py
import logging
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone

import requests

from custody.core.config import settings

logger = logging.getLogger(__name__)

KST = timezone(timedelta(hours=9))

EXPLORER_TX_URLS = {
    "BTC": "https://mempool.space/tx/{}",
    "ETH": "https://etherscan.io/tx/{}",
    "USDT": "https://etherscan.io/tx/{}",
}


def now_kst() -> str:
    return datetime.now(KST).strftime("%Y-%m-%d %H:%M:%S")


def send_telegram_notification(message: str, bot_token: str | None = None, chat_id: str | None = None) -> bool:
    """Send a Telegram bot notification."""
    bot_token = bot_token or settings.TELEGRAM_BOT_TOKEN
    chat_id = chat_id or settings.TELEGRAM_CHAT_ID
    if not bot_token or not chat_id:
        logger.debug("Telegram bot settings are missing. Skipping notification.")
        return False

    url = f"https://api.telegram.org/bot{bot_token}/sendMessage"
    payload = {
        "chat_id": chat_id,
        "text": message,
        "parse_mode": "HTML",
    }

    try:
        response = requests.post(url, json=payload, timeout=10)
        response.raise_for_status()
        logger.info("Telegram notification sent")
        return True
    except requests.exceptions.RequestException as e:
        logger.error(f"Telegram notification failed: {e}")
        return False


def _tx_link(currency: str, tx_reference: str | None) -> str:
    if not tx_reference:
        return "-"
    txid = tx_reference.split(":")[0]
    template = EXPLORER_TX_URLS.get(currency)
    if not template or not (txid.startswith("0x") or currency == "BTC"):
        # balance-diff references are not transaction hashes
        return f"<code>{tx_reference}</code>"
    return f'<a href="{template.format(txid)}">{txid[:16]}...</a>'


class TelegramNotifier:
    """
    Admin notifications. Every send runs on a background worker so a slow or
    failing Telegram API never blocks (or rolls back) a ledger mutation.
    """

    def __init__(self, bot_token: str | None = None, chat_id: str | None = None, workers: int = 2):
        self.bot_token = bot_token
        self.chat_id = chat_id
        self._executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="notify")

    def send(self, message: str):
        try:
            self._executor.submit(send_telegram_notification, message, self.bot_token, self.chat_id)
        except RuntimeError as e:
            # executor already shut down
            logger.warning(f"Notification dropped: {e}")

    def shutdown(self):
        self._executor.shutdown(wait=False)

    def deposit_confirmed(self, record):
        message = f"""
<b>Deposit Confirmed</b>

User ID: {record.user_id}
Amount: {record.amount} {record.currency}
Address: <code>{record.address}</code>
TX: {_tx_link(record.currency, record.tx_reference)}
Confirmations: {record.confirmations}/{record.required_confirmations}
Deposit ID: #{record.id}

Time: {now_kst()}
"""
        self.send(message)

    def withdrawal_requested(self, request):
        message = f"""
<b>New Withdrawal Request</b>

User ID: {request.user_id}
Amount: {request.amount} {request.currency} (fee {request.fee}, net {request.net_amount})
To: <code>{request.destination_address}</code>
Request ID: #{request.id}

Please review in the admin dashboard.
Time: {now_kst()}
"""
        self.send(message)

    def withdrawal_completed(self, request):
        message = f"""
<b>Withdrawal Sent</b>

Request ID: #{request.id}
Amount: {request.net_amount} {request.currency}
To: <code>{request.destination_address}</code>
TX: {_tx_link(request.currency, request.tx_reference)}

Time: {now_kst()}
"""
        self.send(message)

    def withdrawal_rejected(self, request):
        message = f"""
<b>Withdrawal Rejected</b>

Request ID: #{request.id}
Amount: {request.amount} {request.currency}
Reason: {request.admin_notes or '-'}

Time: {now_kst()}
"""
        self.send(message)

    def withdrawal_failed(self, request, reason: str | None = None):
        message = f"""
<b>Withdrawal Failed</b>

Request ID: #{request.id}
Amount: {request.amount} {request.currency}
Reason: {reason or request.admin_notes or '-'}

The hold was released back to the user.
Time: {now_kst()}
"""
        self.send(message)

    def alert(self, title: str, details: str):
        message = f"""
<b>ALERT: {title}</b>

{details}

Time: {now_kst()}
"""
        self.send(message)
