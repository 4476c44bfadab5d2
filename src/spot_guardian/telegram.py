"""
Telegram Bot API: outbound notifier and long-polling command bot.
"""

import logging
import threading
from typing import Any, Callable, Optional

import requests

from .errors import NotificationError, TransientError
from .models import Keyboard
from .notify import Notifier

logger = logging.getLogger(__name__)

API_BASE = "https://api.telegram.org"
REQUEST_TIMEOUT = 30
POLL_TIMEOUT = 30
POLL_RETRY_DELAY = 5

CommandHandler = Callable[[str], None]
CallbackHandler = Callable[[str, str, int], None]


def keyboard_markup(keyboard: Keyboard) -> dict[str, Any]:
    return {
        "inline_keyboard": [
            [{"text": b.text, "callback_data": b.callback_data} for b in row] for row in keyboard
        ]
    }


def parse_command(text: str) -> Optional[str]:
    """'/status@my_bot extra' -> 'status'. Returns None for non-commands."""
    if not text or not text.startswith("/"):
        return None
    parts = text[1:].split()
    if not parts:
        return None
    return parts[0].split("@")[0].lower() or None


class TelegramAPI:
    """Thin JSON-over-HTTPS wrapper bound to one bot token and one chat."""

    def __init__(self, token: str, chat_id: str, session: Optional[requests.Session] = None):
        self.token = token
        self.chat_id = str(chat_id)
        self.session = session or requests.Session()

    def call(self, method: str, payload: dict[str, Any], timeout: float = REQUEST_TIMEOUT) -> Any:
        url = f"{API_BASE}/bot{self.token}/{method}"
        try:
            response = self.session.post(url, json=payload, timeout=timeout)
        except requests.RequestException as e:
            raise TransientError(f"telegram {method} failed: {e}") from e
        try:
            body = response.json()
        except ValueError:
            body = {}
        if response.status_code != 200 or not body.get("ok"):
            description = body.get("description") or f"HTTP {response.status_code}"
            raise NotificationError(f"telegram {method} rejected: {description}")
        return body.get("result")

    def send_message(self, text: str, keyboard: Optional[Keyboard] = None) -> Optional[int]:
        payload: dict[str, Any] = {"chat_id": self.chat_id, "text": text, "parse_mode": "HTML"}
        if keyboard:
            payload["reply_markup"] = keyboard_markup(keyboard)
        result = self.call("sendMessage", payload)
        return result.get("message_id") if isinstance(result, dict) else None

    def edit_message_text(self, message_id: int, text: str, keyboard: Optional[Keyboard] = None) -> None:
        payload: dict[str, Any] = {
            "chat_id": self.chat_id,
            "message_id": message_id,
            "text": text,
            "parse_mode": "HTML",
        }
        if keyboard is not None:
            payload["reply_markup"] = keyboard_markup(keyboard)
        self.call("editMessageText", payload)

    def answer_callback_query(self, callback_id: str, text: str = "", show_alert: bool = False) -> None:
        payload: dict[str, Any] = {"callback_query_id": callback_id}
        if text:
            payload["text"] = text
        if show_alert:
            payload["show_alert"] = True
        self.call("answerCallbackQuery", payload)

    def get_updates(self, offset: int, timeout: int = POLL_TIMEOUT) -> list[dict[str, Any]]:
        result = self.call(
            "getUpdates",
            {"offset": offset, "timeout": timeout, "allowed_updates": ["message", "callback_query"]},
            timeout=timeout + 10,
        )
        return result or []


class TelegramNotifier(Notifier):
    """Sends HTML messages (optionally with inline keyboards) to the configured chat."""

    def __init__(self, api: TelegramAPI):
        self.api = api

    def send(self, text: str, keyboard: Optional[Keyboard] = None) -> Optional[str]:
        try:
            message_id = self.api.send_message(text, keyboard)
        except TransientError as e:
            logger.error("Telegram send failed: %s", e)
            return None
        return str(message_id) if message_id is not None else None


class TelegramBot:
    """Long-polls getUpdates and dispatches commands and callback queries from the authorized chat."""

    def __init__(self, api: TelegramAPI):
        self.api = api
        self.last_update_id = 0
        self._command_handler: Optional[CommandHandler] = None
        self._callback_handler: Optional[CallbackHandler] = None
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def set_command_handler(self, handler: CommandHandler) -> None:
        self._command_handler = handler

    def set_callback_handler(self, handler: CallbackHandler) -> None:
        self._callback_handler = handler

    # Delegated so command handlers only need the bot.
    def send_message_with_keyboard(self, text: str, keyboard: Keyboard) -> Optional[int]:
        return self.api.send_message(text, keyboard)

    def edit_message_text(self, message_id: int, text: str, keyboard: Optional[Keyboard] = None) -> None:
        self.api.edit_message_text(message_id, text, keyboard)

    def answer_callback_query(self, callback_id: str, text: str = "", show_alert: bool = False) -> None:
        self.api.answer_callback_query(callback_id, text, show_alert)

    def _authorized(self, message: Optional[dict[str, Any]]) -> bool:
        if not message:
            return False
        return str(message.get("chat", {}).get("id")) == self.api.chat_id

    def poll_once(self, timeout: int = POLL_TIMEOUT) -> int:
        """Fetch and dispatch one batch of updates. Returns the number processed."""
        updates = self.api.get_updates(self.last_update_id + 1, timeout)
        logger.debug("Got %d updates from Telegram", len(updates))
        for update in updates:
            self.last_update_id = max(self.last_update_id, int(update.get("update_id", 0)))
            self._dispatch(update)
        return len(updates)

    def _dispatch(self, update: dict[str, Any]) -> None:
        callback = update.get("callback_query")
        if callback:
            message = callback.get("message")
            if not self._authorized(message):
                logger.debug("Ignoring callback from unauthorized chat")
                return
            logger.info("Received callback query: %s", callback.get("data"))
            if self._callback_handler:
                self._run_handler(
                    self._callback_handler,
                    callback.get("id", ""),
                    callback.get("data", ""),
                    int(message.get("message_id", 0)),
                )
            return

        message = update.get("message")
        if not message:
            return
        if not self._authorized(message):
            logger.debug("Ignoring message from unauthorized chat: %s", message.get("chat", {}).get("id"))
            return
        command = parse_command(message.get("text", ""))
        if command is None:
            return
        logger.info("Received command: /%s", command)
        if self._command_handler:
            self._run_handler(self._command_handler, command)

    @staticmethod
    def _run_handler(handler: Callable[..., None], *args: Any) -> None:
        try:
            handler(*args)
        except Exception:
            logger.exception("Telegram handler failed for %r", args)

    def run(self) -> None:
        logger.info("Starting Telegram bot polling...")
        while not self._stop.is_set():
            try:
                self.poll_once()
            except TransientError as e:
                logger.warning("Failed to poll updates: %s", e)
                self._stop.wait(POLL_RETRY_DELAY)
            except Exception:
                logger.exception("Unexpected error while polling updates")
                self._stop.wait(POLL_RETRY_DELAY)

    def start(self) -> threading.Thread:
        self._thread = threading.Thread(target=self.run, name="telegram-bot", daemon=True)
        self._thread.start()
        return self._thread

    def stop(self) -> None:
        self._stop.set()
