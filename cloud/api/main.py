from __future__ import annotations

import argparse
import logging
import os
import random
from collections.abc import Mapping
from typing import Any

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from petsync.access import AccessResolver
from petsync.config import ServerConfig, load_options
from petsync.const import ENV_CONFIG_PATH
from petsync.errors import BadRequestError, FailureKind, NotFoundError, PetSyncError, TokenSpaceExhaustedError
from petsync.reconciler import SyncReconciler, SyncRequest
from petsync.record_store import RecordStore
from petsync.records import Clock, Pet, utcnow
from petsync.tokens import ShareTokenManager

from .auth import Caller, caller_dependency

_LOGGER = logging.getLogger(__name__)


class CloudState:
    """Service objects shared by every request of one app instance."""

    def __init__(
        self,
        config: ServerConfig,
        store: RecordStore,
        *,
        clock: Clock = utcnow,
        rng: random.Random | None = None,
    ) -> None:
        self.config = config
        self.store = store
        self.resolver = AccessResolver(store)
        self.reconciler = SyncReconciler(store, self.resolver, clock=clock)
        self.tokens = ShareTokenManager(
            store,
            self.resolver,
            clock=clock,
            rng=rng,
            code_length=config.code_length,
            max_code_attempts=config.max_code_attempts,
        )


def _require_str(data: Mapping[str, Any], key: str) -> str:
    value = str(data.get(key) or "").strip()
    if not value:
        raise BadRequestError(f"{key} is required")
    return value


def _error_response(status_code: int, error: str, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": error, "message": message})


def create_app(
    config: ServerConfig | None = None,
    *,
    store: RecordStore | None = None,
    clock: Clock = utcnow,
    rng: random.Random | None = None,
) -> FastAPI:
    config = config or ServerConfig()
    app = FastAPI(title="PetSync")
    state = CloudState(config, store or RecordStore(config.db_path), clock=clock, rng=rng)
    app.state.state = state

    @app.exception_handler(PetSyncError)
    async def handle_sync_error(request: Request, exc: PetSyncError) -> JSONResponse:
        if exc.kind is FailureKind.FORBIDDEN:
            _LOGGER.warning("Denied %s %s: %s", request.method, request.url.path, exc.message)
        return _error_response(exc.kind.http_status, exc.kind.value, exc.message)

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        return _error_response(400, FailureKind.BAD_REQUEST.value, str(exc.errors()))

    @app.exception_handler(TokenSpaceExhaustedError)
    async def handle_token_space(request: Request, exc: TokenSpaceExhaustedError) -> JSONResponse:
        _LOGGER.error("Share code space exhausted: %s", exc)
        return _error_response(503, FailureKind.TRANSIENT.value, "could not allocate a share code")

    @app.get("/health")
    async def handle_health() -> dict[str, Any]:
        return {"status": "ok"}

    @app.post("/sync")
    async def handle_sync(
        data: dict[str, Any],
        caller: Caller = Depends(caller_dependency),  # noqa: B008
    ) -> dict[str, Any]:
        request = SyncRequest.from_dict(data, caller.caller_id, caller.display_name)
        response = await state.reconciler.reconcile(request)
        return response.to_dict()

    @app.post("/pets", status_code=201)
    async def handle_create_pet(
        data: dict[str, Any],
        caller: Caller = Depends(caller_dependency),  # noqa: B008
    ) -> dict[str, Any]:
        raw = data.get("pet", data)
        pet = await state.reconciler.create_pet(Pet.from_json(raw), caller.caller_id, caller.display_name)
        return {"pet": pet.to_json()}

    @app.post("/pets/delete")
    async def handle_delete_pet(
        data: dict[str, Any],
        caller: Caller = Depends(caller_dependency),  # noqa: B008
    ) -> dict[str, Any]:
        pet_id = _require_str(data, "pet_id")
        deleted = await state.reconciler.delete_pet(pet_id, caller.caller_id)
        return {"pet_id": pet_id, "deleted": deleted}

    @app.post("/share/generate")
    async def handle_share_generate(
        data: dict[str, Any],
        caller: Caller = Depends(caller_dependency),  # noqa: B008
    ) -> dict[str, Any]:
        token = await state.tokens.generate_token(
            _require_str(data, "pet_id"),
            _require_str(data, "tier"),
            caller.caller_id,
            caller.name,
        )
        return token.to_json()

    @app.post("/share/redeem")
    async def handle_share_redeem(
        data: dict[str, Any],
        caller: Caller = Depends(caller_dependency),  # noqa: B008
    ) -> dict[str, Any]:
        result = await state.tokens.redeem_token(_require_str(data, "code"), caller.caller_id, caller.name)
        return result.to_json()

    @app.get("/share/pet/{pet_id}/codes")
    async def handle_share_codes(
        pet_id: str,
        caller: Caller = Depends(caller_dependency),  # noqa: B008
    ) -> dict[str, Any]:
        tokens = await state.tokens.list_tokens(pet_id, caller.caller_id)
        return {"codes": [token.to_json() for token in tokens]}

    @app.get("/share/pet/{pet_id}/users")
    async def handle_share_users(
        pet_id: str,
        caller: Caller = Depends(caller_dependency),  # noqa: B008
    ) -> dict[str, Any]:
        users = await state.tokens.list_users(pet_id, caller.caller_id)
        return {"users": [user.to_json() for user in users]}

    @app.post("/share/revoke")
    async def handle_share_revoke(
        data: dict[str, Any],
        caller: Caller = Depends(caller_dependency),  # noqa: B008
    ) -> dict[str, Any]:
        revoked = await state.tokens.revoke_redemption(
            _require_str(data, "pet_id"),
            _require_str(data, "caller_id"),
            caller.caller_id,
        )
        if not revoked:
            raise NotFoundError("no redemption for that caller")
        return {"revoked": revoked}

    @app.post("/share/leave")
    async def handle_share_leave(
        data: dict[str, Any],
        caller: Caller = Depends(caller_dependency),  # noqa: B008
    ) -> dict[str, Any]:
        left = await state.tokens.leave_pet(_require_str(data, "pet_id"), caller.caller_id)
        if not left:
            raise NotFoundError("caller holds no redemption on this pet")
        return {"left": left}

    @app.delete("/share/{code}")
    async def handle_share_deactivate(
        code: str,
        caller: Caller = Depends(caller_dependency),  # noqa: B008
    ) -> dict[str, Any]:
        deactivated = await state.tokens.deactivate_token(code, caller.caller_id)
        if not deactivated:
            raise NotFoundError("share code not found")
        return {"deactivated": deactivated}

    return app


def main(argv: list[str] | None = None) -> None:
    import uvicorn

    parser = argparse.ArgumentParser(description="Run the PetSync service")
    parser.add_argument("--config", help="YAML options file")
    parser.add_argument("--db-path", help="SQLite database path (or :memory:)")
    parser.add_argument("--host")
    parser.add_argument("--port", type=int)
    parser.add_argument("--log-level")
    args = parser.parse_args(argv)

    options = load_options(args.config or os.environ.get(ENV_CONFIG_PATH))
    overrides = {"db_path": args.db_path, "host": args.host, "port": args.port, "log_level": args.log_level}
    options.update({key: value for key, value in overrides.items() if value is not None})
    config = ServerConfig.from_options(options)

    logging.basicConfig(
        level=getattr(logging, config.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    _LOGGER.info("Serving PetSync on %s:%d with store %s", config.host, config.port, config.db_path)
    uvicorn.run(create_app(config), host=config.host, port=config.port)


if __name__ == "__main__":
    main()
