"""
Anchor coordinator for submitting digest Merkle roots to the attestation adapter.

POSTs ``{"topic": "IOT:{site_id}:{day}", "hash": "0x..."}`` to the adapter's
``/v1/anchor`` endpoint. When an API key is configured it is sent as
``x-app-key``; when a shared secret is configured the exact request body is
signed with HMAC-SHA256 and sent as ``x-app-sig``.

Anchoring is best effort relative to telemetry correctness: every failure
(transport error, non-2xx response, malformed reply) is returned as a failed
AnchorResult and never raised to the caller.

Retry state machine for one request::

    Pending -> Success
    Pending -> Retrying -> Pending     (attempt < max_retries)
    Pending -> Failed                  (retry budget exhausted or cancelled)

Before retry n the coordinator waits 2**n seconds (2s, 4s). The wait returns
early when the optional cancel event is set.

Operations:
- anchor(site_id, day, merkle_root, uri): single attempt.
- anchor_with_retry(...): up to max_retries attempts with backoff.
- status(): GET /health probe.

CHANGELOG:
- 2026-10-19: Accept hex blockNumber replies, fail on malformed ones
- 2026-10-19: Honour a cancel event during backoff waits
- 2026-10-19: Initial creation (STORY-012)

TODO:
- None
"""

from __future__ import annotations

import asyncio
import contextlib
import hashlib
import hmac
import json
import logging
from datetime import date

import httpx

from iotsolar.src.errors import AttestationError
from iotsolar.src.models import AnchorResult, AnchorStatus

logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 3
_DEFAULT_TIMEOUT_S = 30.0
_USER_AGENT = "iotsolar/1.0.0"


def anchor_topic(site_id: str, day: date | str) -> str:
    """Return the registry topic for a site-day."""
    day_str = day.isoformat() if isinstance(day, date) else day
    return f"IOT:{site_id}:{day_str}"


def sign_body(body: bytes, secret: str) -> str:
    """Return the hex HMAC-SHA256 signature of *body* under *secret*."""
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def backoff_delay(attempt: int) -> float:
    """Seconds to wait after failed attempt number *attempt* (1-based)."""
    return float(2**attempt)


def _error_detail(response: httpx.Response) -> str:
    """Extract the adapter's error message, falling back to the status line."""
    try:
        payload = response.json()
    except ValueError:
        payload = None
    if isinstance(payload, dict) and payload.get("error"):
        return str(payload["error"])
    return f"HTTP {response.status_code}"


def _parse_block_number(value: object) -> int:
    """Parse the adapter's ``blockNumber`` (int, decimal or ``0x`` hex string).

    Raises:
        AttestationError: If the value is not a non-negative integer.
    """
    if value is None or value == "":
        return 0
    if isinstance(value, bool):
        raise AttestationError(f"Adapter returned an invalid blockNumber: {value!r}")
    try:
        number = int(value, 0) if isinstance(value, str) else int(value)
    except (TypeError, ValueError) as exc:
        raise AttestationError(
            f"Adapter returned an invalid blockNumber: {value!r}"
        ) from exc
    if number < 0 or (isinstance(value, float) and not value.is_integer()):
        raise AttestationError(f"Adapter returned an invalid blockNumber: {value!r}")
    return number


class AnchorCoordinator:
    """Client for the attestation adapter with retry and backoff.

    Args:
        base_url: Adapter base URL, e.g. ``http://localhost:4100``.
        api_key: Optional API key sent as ``x-app-key``.
        shared_secret: Optional HMAC key; enables the ``x-app-sig`` header.
        enabled: When False every anchor call fails fast without HTTP.
        timeout_s: Per-request timeout in seconds.
        max_retries: Maximum number of attempts in anchor_with_retry.

    Usage::

        coordinator = AnchorCoordinator("https://adapter.example.com", api_key="k")
        result = await coordinator.anchor_with_retry("PRJ001", day, "0xabc...")
    """

    def __init__(
        self,
        base_url: str,
        *,
        api_key: str | None = None,
        shared_secret: str | None = None,
        enabled: bool = True,
        timeout_s: float = _DEFAULT_TIMEOUT_S,
        max_retries: int = DEFAULT_MAX_RETRIES,
    ) -> None:
        if max_retries < 1:
            raise ValueError("max_retries must be >= 1")
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key or None
        self._shared_secret = shared_secret or None
        self._enabled = enabled
        self._timeout_s = timeout_s
        self._max_retries = max_retries

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def enabled(self) -> bool:
        return self._enabled

    def describe(self) -> dict[str, object]:
        """Return non-secret client configuration for diagnostics."""
        return {
            "enabled": self._enabled,
            "base_url": self._base_url,
            "has_api_key": self._api_key is not None,
            "signs_requests": self._shared_secret is not None,
        }

    def build_request(
        self,
        site_id: str,
        day: date | str,
        merkle_root: str,
        uri: str | None = None,
    ) -> tuple[bytes, dict[str, str]]:
        """Serialize the anchor body and compute its headers.

        Returns:
            Tuple of (body bytes, headers). The signature, when present,
            covers exactly the returned body bytes.
        """
        payload: dict[str, str] = {
            "topic": anchor_topic(site_id, day),
            "hash": merkle_root if merkle_root.startswith("0x") else f"0x{merkle_root}",
        }
        if uri:
            payload["uri"] = uri
        body = json.dumps(payload, separators=(",", ":")).encode("utf-8")

        headers = {
            "Content-Type": "application/json",
            "User-Agent": _USER_AGENT,
        }
        if self._api_key:
            headers["x-app-key"] = self._api_key
        if self._shared_secret:
            headers["x-app-sig"] = sign_body(body, self._shared_secret)
        return body, headers

    async def anchor(
        self,
        site_id: str,
        day: date | str,
        merkle_root: str,
        uri: str | None = None,
    ) -> AnchorResult:
        """Submit one anchor request; never raises.

        Returns:
            A successful AnchorResult with the adapter's transaction
            references, or a failed one carrying the error detail.
        """
        if not self._enabled:
            return AnchorResult.failure("Anchoring is disabled")

        try:
            data = await self._post_anchor(site_id, day, merkle_root, uri)
            block_number = _parse_block_number(data.get("blockNumber"))
        except AttestationError as exc:
            logger.warning(
                "Anchor failed for %s: %s", anchor_topic(site_id, day), exc
            )
            return AnchorResult.failure(str(exc))

        return AnchorResult(
            success=True,
            adapter_tx_id=str(data.get("adapterTxId", "")),
            tx_hash=str(data.get("txHash", "")),
            block_number=block_number,
        )

    async def anchor_with_retry(
        self,
        site_id: str,
        day: date | str,
        merkle_root: str,
        uri: str | None = None,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> AnchorResult:
        """Anchor with up to max_retries attempts and exponential backoff.

        Args:
            site_id: Site identifier.
            day: UTC day of the digest.
            merkle_root: Merkle root, with or without ``0x``.
            uri: Optional artifact URI passed to the adapter.
            cancel_event: When set, the retry loop stops before the next
                attempt or during the backoff wait.

        Returns:
            The first successful result (with ``attempts`` filled in), or a
            failure describing the last error and the attempt count.
        """
        if not self._enabled:
            return AnchorResult.failure("Anchoring is disabled", attempts=0)

        topic = anchor_topic(site_id, day)
        last_error: str | None = None
        attempt = 0

        for attempt in range(1, self._max_retries + 1):
            if cancel_event is not None and cancel_event.is_set():
                return self._cancelled(attempt - 1, last_error)

            result = await self.anchor(site_id, day, merkle_root, uri)
            if result.success:
                if attempt > 1:
                    logger.info("Anchor for %s succeeded on attempt %d", topic, attempt)
                return result.model_copy(update={"attempts": attempt})

            last_error = result.error
            if attempt < self._max_retries:
                delay = backoff_delay(attempt)
                logger.warning(
                    "Anchor attempt %d/%d for %s failed, retrying in %.0fs: %s",
                    attempt,
                    self._max_retries,
                    topic,
                    delay,
                    last_error,
                )
                if await self._wait_backoff(delay, cancel_event):
                    return self._cancelled(attempt, last_error)

        logger.error(
            "Anchor for %s failed after %d attempts: %s",
            topic,
            self._max_retries,
            last_error,
        )
        return AnchorResult.failure(
            f"Failed after {self._max_retries} attempts: {last_error}",
            attempts=attempt,
        )

    async def status(self) -> AnchorStatus:
        """Probe the adapter's ``GET /health`` endpoint."""
        if not self._enabled:
            return AnchorStatus(ok=False, error="Anchoring is disabled")
        try:
            async with httpx.AsyncClient(timeout=self._timeout_s) as client:
                response = await client.get(
                    f"{self._base_url}/health",
                    headers={"User-Agent": _USER_AGENT},
                )
        except httpx.HTTPError as exc:
            logger.warning("Anchor service health check failed: %s", exc)
            return AnchorStatus(ok=False, error=str(exc) or type(exc).__name__)

        if response.is_success:
            return AnchorStatus(ok=True)
        return AnchorStatus(ok=False, error=_error_detail(response))

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _post_anchor(
        self,
        site_id: str,
        day: date | str,
        merkle_root: str,
        uri: str | None,
    ) -> dict:
        """POST the anchor request and return the decoded reply.

        Raises:
            AttestationError: On transport failure, non-2xx status or a
                reply that is not a JSON object.
        """
        body, headers = self.build_request(site_id, day, merkle_root, uri)
        try:
            async with httpx.AsyncClient(timeout=self._timeout_s) as client:
                response = await client.post(
                    f"{self._base_url}/v1/anchor",
                    content=body,
                    headers=headers,
                )
        except httpx.HTTPError as exc:
            raise AttestationError(str(exc) or type(exc).__name__) from exc

        if not response.is_success:
            raise AttestationError(_error_detail(response))

        try:
            data = response.json()
        except ValueError as exc:
            raise AttestationError("Adapter returned a non-JSON response") from exc
        if not isinstance(data, dict):
            raise AttestationError("Adapter returned an unexpected response body")
        return data

    async def _wait_backoff(
        self, delay: float, cancel_event: asyncio.Event | None
    ) -> bool:
        """Sleep for *delay* seconds unless cancelled.

        Returns:
            True if the wait was interrupted by *cancel_event*.
        """
        if cancel_event is None:
            await asyncio.sleep(delay)
            return False
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(cancel_event.wait(), timeout=delay)
        return cancel_event.is_set()

    def _cancelled(self, attempts: int, last_error: str | None) -> AnchorResult:
        logger.warning("Anchor retry cancelled after %d attempts", attempts)
        message = f"Cancelled after {attempts} attempts"
        if last_error:
            message = f"{message}: {last_error}"
        return AnchorResult.failure(message, attempts=attempts)
