from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
import json
import logging
import time
from typing import Any, Callable
from urllib.error import HTTPError, URLError

from relay_monitor.errors import FatalRelayError, TransientRelayError
from relay_monitor.http_utils import get_json, post_json
from relay_monitor.models import RelayReceipt, RelayTransaction

LOGGER = logging.getLogger("relay_monitor")

# Malformed request or bad credentials: retrying the same submission cannot help.
FATAL_STATUS_CODES = frozenset({400, 401, 403})


def _error_detail(exc: HTTPError) -> str:
    try:
        body = exc.read().decode("utf-8", errors="replace").strip()
    except Exception:
        return ""
    if not body:
        return ""
    try:
        payload = json.loads(body)
    except ValueError:
        return body[:200]
    if isinstance(payload, dict):
        for key in ("error", "message", "msg", "detail"):
            if payload.get(key):
                return str(payload[key])[:200]
    return body[:200]


def classify_http_error(status_code: int, detail: str = "") -> FatalRelayError | TransientRelayError:
    suffix = f": {detail}" if detail else ""
    if status_code in FATAL_STATUS_CODES:
        return FatalRelayError(f"relay rejected request (HTTP {status_code}){suffix}", status_code=status_code)
    if status_code == 429:
        return TransientRelayError("relay rate limited (HTTP 429)", status_code=status_code)
    return TransientRelayError(f"relay error (HTTP {status_code}){suffix}", status_code=status_code)


@dataclass
class RelayClient:
    base_url: str
    timeout_seconds: float = 10.0
    clock: Callable[[], float] = field(default=time.time, repr=False)

    async def submit(self, tx: RelayTransaction) -> RelayReceipt:
        payload = await self._call(post_json, f"{self.base_url}/relay", tx.to_payload())
        if not isinstance(payload, dict):
            raise TransientRelayError("Unable to parse relay response")
        accepted_at = self.clock()

        reported_id = str(payload.get("id") or payload.get("relayTxId") or "").strip()
        if reported_id and reported_id.lower() != tx.relay_tx_id.lower():
            LOGGER.warning("relay reported id=%s for submitted id=%s", reported_id, tx.relay_tx_id)
        return RelayReceipt(
            id=tx.relay_tx_id,
            accepted_at=accepted_at,
            receipt_signature=str(payload.get("receiptSignature") or ""),
            raw=payload,
        )

    async def balance(self, address: str) -> int:
        payload = await self._call(get_json, f"{self.base_url}/balance/{address}")
        raw = payload.get("balance") if isinstance(payload, dict) else None
        try:
            return int(str(raw), 0) if str(raw).lower().startswith("0x") else int(str(raw))
        except (TypeError, ValueError) as exc:
            raise TransientRelayError("Unable to parse relay balance response") from exc

    async def _call(self, fn: Callable[..., Any], *args: Any) -> Any:
        try:
            return await asyncio.to_thread(fn, *args, timeout=self.timeout_seconds)
        except HTTPError as exc:
            raise classify_http_error(int(exc.code), _error_detail(exc)) from exc
        except URLError as exc:
            raise TransientRelayError(f"relay unreachable: {exc.reason}") from exc
        except TimeoutError as exc:
            raise TransientRelayError("relay request timed out") from exc
        except OSError as exc:
            raise TransientRelayError(f"relay connection error: {exc.__class__.__name__}") from exc
        except ValueError as exc:
            raise TransientRelayError("relay returned invalid JSON") from exc
