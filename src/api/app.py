#!/usr/bin/env python3
"""
Application-service API - the HTTP endpoints the homeserver pushes to
"""
import hmac
import logging
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

if TYPE_CHECKING:
    from src.bridges.puppet_bridge import PuppetBridgeApp

logger = logging.getLogger("puppet_bridge.api")


class Transaction(BaseModel):
    events: List[Dict[str, Any]] = []


class MatrixError(Exception):
    def __init__(self, status_code: int, errcode: str, error: str):
        self.status_code = status_code
        self.errcode = errcode
        self.error = error


def _supplied_token(request: Request) -> Optional[str]:
    authorization = request.headers.get("Authorization", "")
    if authorization.startswith("Bearer "):
        return authorization[len("Bearer "):]
    # Homeservers before v1.4 send the token as a query parameter
    return request.query_params.get("access_token")


def create_app(bridge: "PuppetBridgeApp") -> FastAPI:
    app = FastAPI(
        title="Matrix Puppet Bridge",
        description="Application service endpoints for the puppet bridge",
        version="1.0.0"
    )

    @app.exception_handler(MatrixError)
    async def matrix_error_handler(request: Request, exc: MatrixError):
        return JSONResponse(status_code=exc.status_code, content={"errcode": exc.errcode, "error": exc.error})

    def authorize(request: Request) -> None:
        token = _supplied_token(request)
        if not token:
            raise MatrixError(401, "M_UNAUTHORIZED", "Missing homeserver token")
        if not hmac.compare_digest(token, bridge.hs_token):
            logger.warning(f"Rejected request to {request.url.path} with a bad homeserver token")
            raise MatrixError(403, "M_FORBIDDEN", "Bad homeserver token")

    async def put_transaction(txn_id: str, transaction: Transaction, request: Request):
        authorize(request)
        if bridge.accept_transaction(txn_id, transaction.events):
            logger.info(f"Accepted transaction {txn_id} with {len(transaction.events)} events")
        return {}

    async def query_user(user_id: str, request: Request):
        authorize(request)
        if await bridge.query_user(user_id):
            return {}
        raise MatrixError(404, "M_NOT_FOUND", f"{user_id} is not a bridged user")

    async def query_room_alias(room_alias: str, request: Request):
        authorize(request)
        # Rooms are only created from the third-party side
        raise MatrixError(404, "M_NOT_FOUND", f"{room_alias} is not provisioned on demand")

    for prefix in ("/_matrix/app/v1", ""):
        app.add_api_route(f"{prefix}/transactions/{{txn_id}}", put_transaction, methods=["PUT"])
        app.add_api_route(f"{prefix}/users/{{user_id}}", query_user, methods=["GET"])
        app.add_api_route(f"{prefix}/rooms/{{room_alias}}", query_room_alias, methods=["GET"])

    @app.get("/health")
    async def health_check():
        return bridge.health()

    return app
