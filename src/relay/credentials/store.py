"""
Credential store for the speech provider.

Responsibilities:
- Hold the current access token in a lock-guarded cell shared with the adapters
- Refresh it on a fixed schedule (time-based, not expiry-based)
- Persist the latest value to a local file for crash recovery

Failure policy:
- Fetch failures are retried with bounded exponential backoff.
- After `max_attempts` consecutive failures the store either raises
  CredentialError (fatal mode, ends the process) or enters a degraded state:
  it keeps the last known token and keeps retrying at the max backoff.
"""

from __future__ import annotations

import asyncio
import os
import tempfile
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

from src.relay.config.settings import settings
from src.relay.errors import CredentialError, TransportError, UpstreamError
from src.relay.infra.http import http_request
from src.relay.logging.logger import mask_secret, setup_logger

logger = setup_logger(__name__)


@dataclass(frozen=True)
class Credential:
    value: str
    fetched_at: datetime
    validity_window: timedelta

    @property
    def refresh_due_at(self) -> datetime:
        return self.fetched_at + self.validity_window


class CredentialStore:
    """
    Owns the access token. Adapters call `current_token()` from worker threads.
    """

    def __init__(
        self,
        *,
        token_url: str,
        client_id: str,
        client_secret: str,
        cache_path: str,
        refresh_interval_s: float,
        retry_initial_s: float = 5.0,
        retry_max_s: float = 300.0,
        max_attempts: int = 5,
        fatal_on_failure: bool = False,
        timeout_s: float = 30.0,
    ) -> None:
        self.token_url = token_url
        self.client_id = client_id
        self.client_secret = client_secret
        self.cache_path = Path(cache_path)
        self.refresh_interval_s = refresh_interval_s
        self.retry_initial_s = retry_initial_s
        self.retry_max_s = retry_max_s
        self.max_attempts = max(1, max_attempts)
        self.fatal_on_failure = fatal_on_failure
        self.timeout_s = timeout_s

        self._lock = threading.Lock()
        self._credential: Optional[Credential] = None
        self._degraded = False
        self._ready = asyncio.Event()

    # ------------------------------------------------------------------
    # Shared cell
    # ------------------------------------------------------------------

    def current_token(self) -> str:
        with self._lock:
            return self._credential.value if self._credential else ""

    def credential(self) -> Optional[Credential]:
        with self._lock:
            return self._credential

    @property
    def degraded(self) -> bool:
        return self._degraded

    @property
    def ready(self) -> bool:
        return bool(self.current_token())

    def _set(self, credential: Credential) -> None:
        # May run in a worker thread; the asyncio ready event is set by the loop side.
        with self._lock:
            self._credential = credential

    async def wait_ready(self, timeout: Optional[float] = None) -> bool:
        """Wait until a token is available. Returns False on timeout."""
        if self.ready:
            return True
        try:
            await asyncio.wait_for(self._ready.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return True

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def load_persisted(self) -> bool:
        """Seed the cell from the crash-recovery file if it holds a value."""
        try:
            value = self.cache_path.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            logger.info("No persisted credential | path=%s", self.cache_path)
            return False
        except OSError as exc:
            logger.warning("Could not read persisted credential | path=%s", self.cache_path, exc_info=exc)
            return False

        if not value:
            return False

        try:
            mtime = datetime.fromtimestamp(self.cache_path.stat().st_mtime, tz=timezone.utc)
        except OSError:
            mtime = datetime.now(timezone.utc)

        self._set(Credential(value=value, fetched_at=mtime, validity_window=self._window()))
        self._ready.set()
        logger.info("Persisted credential loaded | path=%s | token=%s", self.cache_path, mask_secret(value))
        return True

    def _persist(self, value: str) -> None:
        self.cache_path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=str(self.cache_path.parent), prefix=".token-")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(value)
            os.chmod(tmp_path, 0o600)
            os.replace(tmp_path, self.cache_path)
        except BaseException:
            Path(tmp_path).unlink(missing_ok=True)
            raise

    # ------------------------------------------------------------------
    # Refresh
    # ------------------------------------------------------------------

    def _window(self) -> timedelta:
        return timedelta(seconds=self.refresh_interval_s)

    def fetch(self) -> Credential:
        """
        Fetch a fresh token from the auth endpoint (blocking).

        Raises UpstreamError / TransportError.
        """
        resp = http_request(
            self.token_url,
            params={
                "grant_type": "client_credentials",
                "client_id": self.client_id,
                "client_secret": self.client_secret,
            },
            timeout=self.timeout_s,
            service="token",
        )
        payload = resp.json(service="token")
        token = (payload.get("access_token") or "").strip() if isinstance(payload, dict) else ""
        if not token:
            detail = payload.get("error_description") or payload.get("error") if isinstance(payload, dict) else None
            raise UpstreamError(f"no access_token in response ({detail or 'empty'})", service="token")

        return Credential(
            value=token,
            fetched_at=datetime.now(timezone.utc),
            validity_window=self._window(),
        )

    def refresh_once(self) -> Credential:
        """Fetch, publish to the shared cell, persist (blocking)."""
        credential = self.fetch()
        self._set(credential)
        try:
            self._persist(credential.value)
        except OSError as exc:
            # The in-memory value is already live; only crash recovery is affected.
            logger.error("Failed to persist credential | path=%s", self.cache_path, exc_info=exc)

        logger.info(
            "Credential refreshed | token=%s | next_refresh=%s",
            mask_secret(credential.value),
            credential.refresh_due_at.isoformat(),
        )
        return credential

    async def _refresh_with_backoff(self) -> Credential:
        attempt = 0
        delay = self.retry_initial_s
        while True:
            try:
                credential = await asyncio.to_thread(self.refresh_once)
            except (UpstreamError, TransportError) as exc:
                attempt += 1
                logger.error(
                    "Credential refresh failed | attempt=%s | max_attempts=%s | retry_in_s=%.1f",
                    attempt,
                    self.max_attempts,
                    delay,
                    exc_info=exc,
                )
                if attempt >= self.max_attempts:
                    if self.fatal_on_failure:
                        raise CredentialError(f"credential refresh failed {attempt} times: {exc}") from exc
                    if not self._degraded:
                        logger.error(
                            "Credential store degraded | serving_last_token=%s",
                            bool(self.current_token()),
                        )
                    self._degraded = True
                await asyncio.sleep(delay)
                delay = min(delay * 2, self.retry_max_s)
                continue

            self._ready.set()
            if self._degraded:
                logger.info("Credential store recovered | attempts=%s", attempt + 1)
            self._degraded = False
            return credential

    async def run_refresh_loop(self) -> None:
        """
        Refresh immediately, then every `refresh_interval_s` (runs forever).
        """
        logger.info(
            "Credential refresh loop started | url=%s | interval_s=%s | fatal_on_failure=%s",
            self.token_url,
            self.refresh_interval_s,
            self.fatal_on_failure,
        )
        while True:
            await self._refresh_with_backoff()
            await asyncio.sleep(self.refresh_interval_s)


def build_credential_store() -> CredentialStore:
    return CredentialStore(
        token_url=settings.token_url,
        client_id=settings.speech_client_id,
        client_secret=settings.speech_client_secret,
        cache_path=settings.credential_cache_path,
        refresh_interval_s=settings.credential_refresh_interval_s,
        retry_initial_s=settings.credential_retry_initial_s,
        retry_max_s=settings.credential_retry_max_s,
        max_attempts=settings.credential_max_attempts,
        fatal_on_failure=settings.credential_refresh_fatal,
        timeout_s=settings.http_timeout_s,
    )
