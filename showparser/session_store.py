"""Persist and restore browser cookies for the scraping identity."""

import asyncio
import json
import logging
import os
import sys
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from showparser.errors import SessionStoreError

logger = logging.getLogger(__name__)

Cookies = list[dict[str, Any]]


@dataclass
class SessionValidation:
    is_valid: bool
    total: int
    expired: int
    missing_required: list[str] = field(default_factory=list)
    checked_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


def _is_expired(cookie: dict[str, Any], now: float) -> bool:
    expires = cookie.get("expires")
    if expires in (None, -1):
        return False
    try:
        return 0 < float(expires) < now
    except (TypeError, ValueError):
        return False


def validate_cookies(cookies: Optional[Cookies], required: list[str]) -> SessionValidation:
    """Report expired and missing required cookies without touching storage."""
    if not cookies:
        return SessionValidation(is_valid=False, total=0, expired=0, missing_required=list(required))
    now = time.time()
    expired = [c for c in cookies if _is_expired(c, now)]
    names = {c.get("name") for c in cookies}
    missing = [name for name in required if name not in names]
    return SessionValidation(
        is_valid=not expired and not missing,
        total=len(cookies),
        expired=len(expired),
        missing_required=missing,
    )


class FileSessionStore:
    """
    Cookie jar backed by a JSON file.

    ``env_cookies`` (a JSON array, typically from an environment variable)
    takes precedence over the file so a deployment can ship a session without
    a writable disk. Absence of cookies is not an error: ``load`` returns
    ``None`` and the caller decides whether a fresh login is needed.
    """

    def __init__(
        self,
        path: str | Path,
        *,
        env_cookies: str = "",
        timeout_seconds: float = 2.0,
        required_cookies: Optional[list[str]] = None,
    ) -> None:
        self.path = Path(path)
        self._env_cookies = env_cookies.strip()
        self._timeout = timeout_seconds
        self.required_cookies = list(required_cookies or [])

    async def load(self) -> Optional[Cookies]:
        try:
            cookies = await asyncio.wait_for(asyncio.to_thread(self._read), self._timeout)
        except asyncio.TimeoutError:
            logger.warning("Timed out reading session cookies from %s", self.path)
            return None
        if not cookies:
            return None
        now = time.time()
        fresh = [c for c in cookies if not _is_expired(c, now)]
        if len(fresh) < len(cookies):
            logger.warning("Dropped %d expired session cookies", len(cookies) - len(fresh))
        return fresh or None

    async def save(self, cookies: Cookies) -> None:
        try:
            await asyncio.wait_for(asyncio.to_thread(self._write, cookies), self._timeout)
        except asyncio.TimeoutError as e:
            raise SessionStoreError(f"Timed out writing session cookies to {self.path}") from e
        except OSError as e:
            raise SessionStoreError(f"Could not write session cookies: {e}") from e

    async def clear(self) -> None:
        try:
            await asyncio.wait_for(asyncio.to_thread(self._remove), self._timeout)
        except asyncio.TimeoutError as e:
            raise SessionStoreError(f"Timed out removing {self.path}") from e
        except OSError as e:
            raise SessionStoreError(f"Could not remove session cookies: {e}") from e
        self._env_cookies = ""

    async def validate(self) -> SessionValidation:
        try:
            cookies = await asyncio.wait_for(asyncio.to_thread(self._read), self._timeout)
        except asyncio.TimeoutError:
            cookies = None
        return validate_cookies(cookies, self.required_cookies)

    # -- blocking helpers, run in a worker thread --------------------------

    def _read(self) -> Optional[Cookies]:
        if self._env_cookies:
            raw = self._env_cookies
        elif self.path.exists():
            raw = self.path.read_text(encoding="utf-8")
        else:
            return None
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Session cookie data is not valid JSON, ignoring it")
            return None
        if not isinstance(data, list):
            return None
        return [c for c in data if isinstance(c, dict) and c.get("name")]

    def _write(self, cookies: Cookies) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_text(json.dumps(cookies, indent=2), encoding="utf-8")
        os.replace(tmp, self.path)

    def _remove(self) -> None:
        self.path.unlink(missing_ok=True)


async def main() -> None:
    """CLI: show or clear the stored session."""
    from showparser.config import settings

    store = FileSessionStore(
        settings.session_cookies_path,
        env_cookies=settings.session_cookies_json,
        timeout_seconds=settings.session_store_timeout_seconds,
        required_cookies=settings.required_session_cookies,
    )
    command = sys.argv[1] if len(sys.argv) > 1 else "status"

    if command == "clear":
        await store.clear()
        print(f"Cleared session cookies at {store.path}")
    elif command == "status":
        report = await store.validate()
        print(f"Session cookies: {store.path}")
        print(f"  Total:            {report.total}")
        print(f"  Expired:          {report.expired}")
        print(f"  Missing required: {', '.join(report.missing_required) or 'none'}")
        print(f"  Valid:            {report.is_valid}")
    else:
        print("Usage:")
        print("  python -m showparser.session_store status")
        print("  python -m showparser.session_store clear")


if __name__ == "__main__":
    asyncio.run(main())
