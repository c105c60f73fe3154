import asyncio
import logging
from typing import Optional

import aiohttp


logger = logging.getLogger(__name__)

TELEGRAM_API_URL = "https://api.telegram.org"


class TelegramNotifier:
    """Fire-and-forget text sink over the Telegram Bot API.

    ``send`` never raises: delivery failures are logged and dropped. Without a
    token the notifier only logs the message.
    """

    def __init__(
        self,
        token: Optional[str] = None,
        default_recipient: Optional[str] = None,
        timeout_s: float = 5.0,
        api_url: str = TELEGRAM_API_URL,
    ):
        if token and 'your-bot-token' not in str(token):
            self.token = token
            self.enabled = True
        else:
            self.token = None
            self.enabled = False
        self.default_recipient = default_recipient
        self.timeout_s = timeout_s
        self.api_url = api_url.rstrip('/')
        self._session: Optional[aiohttp.ClientSession] = None
        self._lock = asyncio.Lock()

    @classmethod
    def from_config(cls, cfg) -> "TelegramNotifier":
        cfg = dict(cfg or {})
        return cls(
            token=cfg.get('telegram_token'),
            default_recipient=cfg.get('recipient_id'),
            timeout_s=float(cfg.get('request_timeout_s', 5)),
        )

    async def _get_session(self) -> aiohttp.ClientSession:
        async with self._lock:
            if self._session is None or self._session.closed:
                self._session = aiohttp.ClientSession()
            return self._session

    async def send(self, recipient_id: Optional[str], text: str) -> None:
        chat_id = recipient_id or self.default_recipient
        if not self.enabled or not chat_id:
            logger.info("[Notify] %s", text)
            return

        payload = {
            'chat_id': chat_id,
            'text': text,
            'parse_mode': 'HTML',
            'disable_web_page_preview': True,
        }
        try:
            session = await self._get_session()
            async with session.post(
                f"{self.api_url}/bot{self.token}/sendMessage",
                json=payload,
                timeout=aiohttp.ClientTimeout(total=self.timeout_s),
            ) as response:
                if response.status != 200:
                    body = await response.text()
                    logger.error(
                        "[Notify] Telegram send failed with status %s: %s",
                        response.status,
                        body[:200],
                    )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("[Notify] Telegram error: %s", e)

    async def close(self) -> None:
        async with self._lock:
            if self._session and not self._session.closed:
                await self._session.close()
                self._session = None
