from __future__ import annotations

from dataclasses import dataclass

from fastapi import Header

from petsync.const import HEADER_CALLER_ID, HEADER_DISPLAY_NAME
from petsync.errors import BadRequestError


@dataclass(slots=True)
class Caller:
    """Identity asserted by the device; tiers are resolved per pet, never here."""

    caller_id: str
    display_name: str | None = None

    @property
    def name(self) -> str:
        return self.display_name or self.caller_id


async def caller_dependency(
    caller: str | None = Header(None, alias=HEADER_CALLER_ID),
    display_name: str | None = Header(None, alias=HEADER_DISPLAY_NAME),
) -> Caller:
    caller_id = str(caller or "").strip()
    if not caller_id:
        raise BadRequestError(f"{HEADER_CALLER_ID} header is required")
    name = display_name.strip() if isinstance(display_name, str) else None
    return Caller(caller_id=caller_id, display_name=name or None)


__all__ = ["Caller", "caller_dependency"]
