"""Attestation recorder – publishes a tamper-evident record of each applied fix.

Fire-and-forget: the healing loop logs the outcome and carries on whatever
happens here.  Disabled unless ``ATTESTATION_ENABLED`` is set and an endpoint
is configured.
"""

from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import asdict, dataclass
from typing import Any

import httpx

logger = logging.getLogger(__name__)


@dataclass
class FixAttestation:
    session_id: str
    bug_category: str
    file_path: str
    line: int
    error_message: str
    fix_description: str
    commit_sha: str
    test_before_passed: bool = False
    test_after_passed: bool = False

    def digest(self) -> str:
        """SHA-256 over the canonical JSON form of the record."""
        canonical = json.dumps(asdict(self), sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()

    def to_dict(self) -> dict[str, Any]:
        return {**asdict(self), "digest": self.digest()}


@dataclass
class AttestationResult:
    success: bool
    attestation_id: str | None = None
    explorer_url: str | None = None
    error: str | None = None


class AttestationRecorder:
    """POSTs :class:`FixAttestation` records to an attestation endpoint."""

    def __init__(
        self,
        enabled: bool = False,
        endpoint: str = "",
        api_key: str = "",
        client: httpx.AsyncClient | None = None,
        timeout_s: float = 15.0,
    ):
        self.endpoint = endpoint
        self.api_key = api_key
        self.enabled = bool(enabled and endpoint)
        self._client = client
        self._timeout_s = timeout_s

    async def record_fix_attestation(self, attestation: FixAttestation) -> AttestationResult:
        """Record one attestation.  Never raises."""
        if not self.enabled:
            return AttestationResult(success=False, error="attestation disabled")

        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        try:
            if self._client is not None:
                resp = await self._client.post(self.endpoint, json=attestation.to_dict(), headers=headers)
            else:
                async with httpx.AsyncClient(timeout=self._timeout_s) as client:
                    resp = await client.post(self.endpoint, json=attestation.to_dict(), headers=headers)
            resp.raise_for_status()
            data = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("Attestation for %s failed: %s", attestation.file_path, exc)
            return AttestationResult(success=False, error=str(exc))

        if not isinstance(data, dict):
            data = {}
        attestation_id = data.get("attestation_id") or data.get("id")
        return AttestationResult(
            success=True,
            attestation_id=str(attestation_id) if attestation_id is not None else None,
            explorer_url=data.get("explorer_url") or data.get("url"),
        )
