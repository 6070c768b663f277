"""
HTTP surface for the authorization engine.

Caller identity comes from the ``X-Bundl-Principal`` header, which the
authenticating proxy in front of this service is trusted to set.
"""

from __future__ import annotations

from fastapi import FastAPI, Header, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .engine import AuthorizationEngine
from .errors import (
    BundlError,
    BundleNotFoundError,
    ControllerNotFoundError,
    FundingAccountMismatchError,
    FundingAccountMissingError,
    InsufficientFundsError,
    IntervalNotPassedError,
    InvalidBundleError,
    InvalidDelegateError,
    LedgerError,
    LowAllowanceError,
    NotOwnerError,
    PaymentRecordFailedError,
    SpendingCapExceededError,
    TransferFailedError,
    UnauthorizedError,
)


PRINCIPAL_HEADER = "X-Bundl-Principal"

_STATUS_BY_ERROR: list[tuple[type[BundlError], int]] = [
    (UnauthorizedError, 403),
    (NotOwnerError, 403),
    (InvalidDelegateError, 403),
    (ControllerNotFoundError, 404),
    (BundleNotFoundError, 404),
    (IntervalNotPassedError, 409),
    (InsufficientFundsError, 402),
    (SpendingCapExceededError, 402),
    (TransferFailedError, 402),
    (LowAllowanceError, 402),
    (FundingAccountMismatchError, 422),
    (FundingAccountMissingError, 422),
    (InvalidBundleError, 422),
    (LedgerError, 502),
    (PaymentRecordFailedError, 500),
]


class InitializeControllerBody(BaseModel):
    funding_account: str
    mint: str


class AddBundleBody(BaseModel):
    amount_per_interval: int = Field(gt=0)
    interval: int = Field(gt=0)


class TriggerBody(BaseModel):
    recipient: str


class SpendingCapBody(BaseModel):
    cap: int | None = Field(default=None, ge=0)


def _status_for(error: BundlError) -> int:
    for error_type, status in _STATUS_BY_ERROR:
        if isinstance(error, error_type):
            return status
    return 400


def create_app(engine: AuthorizationEngine) -> FastAPI:
    app = FastAPI(title="bundl")

    @app.exception_handler(BundlError)
    async def bundl_error_handler(request: Request, exc: BundlError):
        headers = {}
        if isinstance(exc, IntervalNotPassedError):
            headers["Retry-After"] = str(int(exc.retry_after))
        content = {"error": exc.code, "message": str(exc)}
        if isinstance(exc, PaymentRecordFailedError):
            content["transfer_id"] = exc.transfer_id
        return JSONResponse(status_code=_status_for(exc), content=content, headers=headers)

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError):
        return JSONResponse(status_code=422, content={"error": "InvalidRequest", "message": str(exc)})

    @app.get("/health")
    def health():
        return {"status": "ok"}

    @app.post("/controllers")
    def initialize_controller(
        body: InitializeControllerBody,
        principal: str = Header(alias=PRINCIPAL_HEADER),
    ):
        controller = engine.initialize_controller(principal, body.funding_account, body.mint)
        return controller.to_dict()

    @app.put("/controllers/{controller_id}/cap")
    def set_spending_cap(
        controller_id: str,
        body: SpendingCapBody,
        principal: str = Header(alias=PRINCIPAL_HEADER),
    ):
        controller = engine.set_spending_cap(principal, body.cap, controller_id=controller_id)
        return controller.to_dict()

    @app.post("/controllers/{controller_id}/bundles")
    def add_bundle(
        controller_id: str,
        body: AddBundleBody,
        principal: str = Header(alias=PRINCIPAL_HEADER),
    ):
        bundle = engine.add_bundle(
            principal,
            body.amount_per_interval,
            body.interval,
            controller_id=controller_id,
        )
        return bundle.to_dict()

    @app.get("/controllers/{controller_id}/bundles")
    def list_bundles(controller_id: str):
        return [b.to_dict() for b in engine.list_bundles(controller_id)]

    @app.get("/controllers/{controller_id}/bundles/{bundle_id}")
    def get_bundle(controller_id: str, bundle_id: int):
        return engine.get_bundle(controller_id, bundle_id).to_dict()

    @app.post("/controllers/{controller_id}/bundles/{bundle_id}/trigger")
    def trigger(
        controller_id: str,
        bundle_id: int,
        body: TriggerBody,
        principal: str = Header(alias=PRINCIPAL_HEADER),
    ):
        return engine.trigger(principal, controller_id, bundle_id, body.recipient).to_dict()

    return app
