import os
import time
import asyncio
import threading
from typing import Optional, Dict, Any, List

from telethon import TelegramClient
from telethon.errors import FloodWaitError

from core.background_loop import run_in_bg
from core.config import Config
from core.logging import get_logger

logger = get_logger('telethon_client')

_client: Optional['TelethonUserClient'] = None
_client_lock = threading.Lock()


def get_client() -> 'TelethonUserClient':
    global _client
    with _client_lock:
        if _client is None:
            _client = TelethonUserClient()
        return _client


def reset_client():
    global _client
    with _client_lock:
        _client = None


class TelethonUserClient:
    """
    The single Telegram user account the bot speaks through.

    send_message() never raises; it returns {'success': bool, ...} so callers
    can count and report failures without try/except around every send.
    """

    def __init__(self, session_name: Optional[str] = None):
        self.session_name = session_name or Config.get_session_name()
        self.session_dir = Config.get_session_dir()
        self._client: Optional[TelegramClient] = None
        self._lock = asyncio.Lock()

        self.status = 'disconnected'
        self.last_heartbeat: Optional[float] = None
        self.last_send: Optional[float] = None
        self.last_error: Optional[str] = None
        self.sends_total = 0

        os.makedirs(self.session_dir, exist_ok=True)

        self._api_id = Config.get_telegram_api_id()
        self._api_hash = Config.get_telegram_api_hash()
        self._phone = Config.get_telegram_phone()
        if self._phone:
            logger.info(f"Credentials loaded from env, phone={self.masked_phone}")
        else:
            logger.warning("No TELEGRAM_PHONE configured")

    @property
    def masked_phone(self) -> Optional[str]:
        if self._phone and len(self._phone) >= 4:
            return '***' + self._phone[-4:]
        return None

    @property
    def has_credentials(self) -> bool:
        return bool(self._api_id and self._api_hash)

    @property
    def session_path(self) -> str:
        return os.path.join(self.session_dir, self.session_name)

    def _build_client(self) -> TelegramClient:
        if not self.has_credentials:
            raise ValueError("Missing TELEGRAM_API_ID/TELEGRAM_API_HASH")
        return TelegramClient(
            self.session_path,
            self._api_id,
            self._api_hash,
        )

    async def connect(self) -> bool:
        async with self._lock:
            if self._client and self._client.is_connected():
                if await self._client.is_user_authorized():
                    self.status = 'connected'
                    return True
                else:
                    self.status = 'not_authorized'
                    return False
            try:
                self._client = self._build_client()
                await self._client.connect()
                if await self._client.is_user_authorized():
                    self.status = 'connected'
                    self.last_heartbeat = time.time()
                    logger.info(f"Telethon connected, session={self.session_name}")
                    return True
                else:
                    self.status = 'not_authorized'
                    logger.warning(f"Telethon connected but not authorized, session={self.session_name}")
                    return False
            except Exception as e:
                self.status = 'error'
                self.last_error = str(e)
                logger.exception(f"Telethon connect failed: {e}")
                return False

    async def disconnect(self):
        async with self._lock:
            if self._client:
                try:
                    await self._client.disconnect()
                except Exception as e:
                    logger.warning(f"Error during disconnect: {e}")
                finally:
                    self._client = None
                    self.status = 'disconnected'
                    logger.info("Telethon disconnected")

    async def send_message(self, chat_id, text: str) -> Dict[str, Any]:
        async with self._lock:
            if not self._client or not self._client.is_connected():
                return {'success': False, 'error': 'Not connected'}

        max_retries = 3
        for attempt in range(1, max_retries + 1):
            try:
                msg = await self._client.send_message(chat_id, text)
                self.sends_total += 1
                self.last_send = time.time()
                self.last_heartbeat = time.time()
                logger.info(f"Message sent via Telethon: chat={chat_id}, msg_id={msg.id}")
                return {'success': True, 'message_id': msg.id}
            except FloodWaitError as e:
                wait_seconds = e.seconds
                self.last_error = f"FloodWait {wait_seconds}s (attempt {attempt}/{max_retries})"
                logger.warning(f"FloodWaitError: waiting {wait_seconds}s (attempt {attempt}/{max_retries})")
                if attempt < max_retries:
                    await asyncio.sleep(wait_seconds + (attempt * 2))
                else:
                    logger.error(f"FloodWait retries exhausted after {max_retries} attempts")
                    return {'success': False, 'error': f'FloodWait retries exhausted after {max_retries} attempts (last wait: {wait_seconds}s)'}
            except Exception as e:
                self.last_error = str(e)
                logger.exception(f"send_message failed (attempt {attempt}/{max_retries}): {e}")
                if attempt < max_retries:
                    await asyncio.sleep(attempt * 2)
                else:
                    return {'success': False, 'error': str(e)}

        return {'success': False, 'error': 'Max retries exhausted'}

    async def list_known_chats(self) -> List[Dict[str, Any]]:
        """Private (user) dialogs that already have message history."""
        if not self._client or not self._client.is_connected():
            return []

        chats = []
        async for dialog in self._client.iter_dialogs():
            if not dialog.is_user or dialog.message is None:
                continue
            entity = dialog.entity
            if getattr(entity, 'is_self', False) or getattr(entity, 'bot', False):
                continue
            chats.append({'chat_id': dialog.id, 'name': dialog.name})
        logger.info(f"Found {len(chats)} private chat(s) with history")
        return chats

    def connect_sync(self) -> bool:
        return run_in_bg(self.connect())

    def disconnect_sync(self):
        return run_in_bg(self.disconnect())

    def is_connected(self) -> bool:
        return self.status == 'connected' and self._client is not None and self._client.is_connected()

    def get_status(self) -> Dict[str, Any]:
        return {
            'session': self.session_name,
            'status': self.status,
            'connected': self.is_connected(),
            'last_heartbeat': self.last_heartbeat,
            'last_send': self.last_send,
            'last_error': self.last_error,
            'sends_total': self.sends_total,
            'has_credentials': self.has_credentials,
            'masked_phone': self.masked_phone,
            'has_session_file': os.path.exists(self.session_path + '.session'),
        }

    @property
    def raw_client(self) -> Optional[TelegramClient]:
        return self._client
