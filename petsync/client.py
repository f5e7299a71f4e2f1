from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

import aiohttp

from .const import DEFAULT_SYNC_INTERVAL, DEFAULT_TIMEOUT, HEADER_CALLER_ID, HEADER_DISPLAY_NAME
from .errors import BadRequestError, PetSyncError, TransientSyncError
from .local_cache import LocalCache
from .merge import MergeApplier, MergeReport
from .reconciler import SyncRequest, SyncResponse
from .records import Pet, Redemption, ShareToken, Tier, format_timestamp
from .tokens import RedeemResult, normalise_code

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class SyncResult:
    pet_id: str
    pushed: int
    watermark: datetime
    merge: MergeReport


@dataclass(slots=True)
class SyncAllReport:
    """Outcome of one fan-out round; a failing pet never blocks the others."""

    synced: dict[str, SyncResult] = field(default_factory=dict)
    failures: dict[str, Exception] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failures


class PetSyncClient:
    """Device-side sync agent talking to the PetSync service over HTTP."""

    def __init__(
        self,
        session: aiohttp.ClientSession,
        cache: LocalCache,
        base_url: str,
        caller_id: str,
        *,
        display_name: str | None = None,
        timeout: float = DEFAULT_TIMEOUT,
        merger: MergeApplier | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.session = session
        self.cache = cache
        self.base_url = base_url.rstrip("/")
        self.caller_id = caller_id
        self.display_name = display_name
        self.timeout = timeout
        self.merger = merger or MergeApplier(cache)
        self.logger = logger or LOGGER
        self.last_success_at: datetime | None = None
        self.last_error: str | None = None

    # ------------------------------------------------------------------
    def _headers(self) -> dict[str, str]:
        headers = {HEADER_CALLER_ID: self.caller_id, "Accept": "application/json"}
        if self.display_name:
            headers[HEADER_DISPLAY_NAME] = self.display_name
        return headers

    async def _request(self, method: str, path: str, body: Mapping[str, Any] | None = None) -> dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            async with self.session.request(
                method,
                url,
                json=body,
                headers=self._headers(),
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            ) as resp:
                status = resp.status
                text = await resp.text()
        except (aiohttp.ClientError, TimeoutError) as err:
            raise TransientSyncError(f"{method} {path} failed: {err}") from err

        try:
            payload = json.loads(text) if text.strip() else {}
        except json.JSONDecodeError:
            payload = {"message": text}
        if not isinstance(payload, dict):
            payload = {"message": str(payload)}
        if status >= 400:
            message = str(payload.get("message") or payload.get("detail") or f"HTTP {status}")
            raise PetSyncError.from_status(status, message)
        return payload

    # ------------------------------------------------------------------
    async def sync_pet(self, pet_id: str) -> SyncResult:
        """Run one round for ``pet_id``.

        Dirty flags and the watermark are only touched after the server answered
        and the delta parsed; any failure leaves the round safe to repeat.
        """

        watermark = self.cache.get_watermark(pet_id)
        dirty = self.cache.get_dirty(pet_id)
        request = SyncRequest(pet_id=pet_id, caller_id=self.caller_id, watermark=watermark, changes=dirty)
        payload = await self._request("POST", "/sync", request.to_dict())
        try:
            response = SyncResponse.from_dict(payload)
        except BadRequestError as err:
            raise TransientSyncError(f"malformed sync response: {err}") from err

        report = self.merger.apply(response.changes, dirty)
        self.cache.set_watermark(pet_id, response.watermark)
        self.last_success_at = datetime.now(tz=UTC)
        self.logger.info(
            "Synced pet %s: pushed %d, applied %d, kept %d local",
            pet_id,
            request.count(),
            report.applied,
            report.skipped,
        )
        return SyncResult(pet_id=pet_id, pushed=request.count(), watermark=response.watermark, merge=report)

    def pending_pet_ids(self) -> list[str]:
        """Pets a round should cover: live ones, plus deleted ones with unpushed rows."""

        pet_ids = []
        for pet in self.cache.list_pets(include_deleted=True):
            if pet.is_deleted and not any(self.cache.get_dirty(pet.id).values()):
                continue
            pet_ids.append(pet.id)
        return pet_ids

    async def sync_all(self) -> SyncAllReport:
        pet_ids = self.pending_pet_ids()
        results = await asyncio.gather(*(self.sync_pet(pet_id) for pet_id in pet_ids), return_exceptions=True)
        report = SyncAllReport()
        for pet_id, result in zip(pet_ids, results, strict=True):
            if isinstance(result, Exception):
                self.logger.warning("Sync of pet %s failed: %s", pet_id, result)
                report.failures[pet_id] = result
            elif isinstance(result, BaseException):
                raise result
            else:
                report.synced[pet_id] = result
        self.last_error = "; ".join(f"{pet_id}: {err}" for pet_id, err in report.failures.items()) or None
        return report

    async def run_forever(self, *, interval_seconds: int = DEFAULT_SYNC_INTERVAL) -> None:
        while True:
            try:
                await self.sync_all()
            except asyncio.CancelledError:
                raise
            except Exception as err:  # pragma: no cover - logged and retried next round
                self.logger.exception("Unexpected sync error: %s", err)
                self.last_error = str(err)
            await asyncio.sleep(interval_seconds)

    def status(self) -> dict[str, Any]:
        return {
            "caller_id": self.caller_id,
            "last_success_at": format_timestamp(self.last_success_at) if self.last_success_at else None,
            "last_error": self.last_error,
            "pets": len(self.cache.list_pets()),
        }

    # ------------------------------------------------------------------
    async def create_pet(self, pet: Pet) -> Pet:
        payload = await self._request("POST", "/pets", {"pet": pet.to_json()})
        created = Pet.from_json(payload["pet"])
        self.cache.save_synced([created])
        return created

    async def delete_pet(self, pet_id: str) -> int:
        payload = await self._request("POST", "/pets/delete", {"pet_id": pet_id})
        self.cache.purge_pet(pet_id)
        return int(payload.get("deleted", 0))

    async def generate_token(self, pet_id: str, tier: Tier | str) -> ShareToken:
        value = tier.value if isinstance(tier, Tier) else str(tier)
        payload = await self._request("POST", "/share/generate", {"pet_id": pet_id, "tier": value})
        return ShareToken.from_json(payload)

    async def redeem_token(self, code: str) -> RedeemResult:
        """Redeem ``code`` and store the returned snapshot as already synced."""

        payload = await self._request("POST", "/share/redeem", {"code": normalise_code(code)})
        result = RedeemResult.from_json(payload)
        self.cache.save_synced(result.records())
        return result

    async def list_tokens(self, pet_id: str) -> list[ShareToken]:
        payload = await self._request("GET", f"/share/pet/{pet_id}/codes")
        return [ShareToken.from_json(item) for item in payload.get("codes", [])]

    async def list_users(self, pet_id: str) -> list[Redemption]:
        payload = await self._request("GET", f"/share/pet/{pet_id}/users")
        return [Redemption.from_json(item) for item in payload.get("users", [])]

    async def revoke(self, pet_id: str, caller_id: str) -> bool:
        payload = await self._request("POST", "/share/revoke", {"pet_id": pet_id, "caller_id": caller_id})
        return bool(payload.get("revoked"))

    async def deactivate_token(self, code: str) -> bool:
        payload = await self._request("DELETE", f"/share/{normalise_code(code)}")
        return bool(payload.get("deactivated"))

    async def leave_pet(self, pet_id: str) -> bool:
        payload = await self._request("POST", "/share/leave", {"pet_id": pet_id})
        self.cache.purge_pet(pet_id)
        return bool(payload.get("left"))


__all__ = ["PetSyncClient", "SyncAllReport", "SyncResult"]
