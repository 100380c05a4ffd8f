from __future__ import annotations

import math
import secrets
from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from gas_meter.config import load_env
from gas_meter.errors import (
    ConfigError,
    ErrorCode,
    GasMeterError,
    RateLimitedError,
    UnauthorizedError,
    ValidationError,
)
from gas_meter.gateway import FundingShortfall
from gas_meter.logging import configure_logging, generate_request_id, get_logger
from gas_meter.models import Asset, Project, Tier

from .services import ServiceContainer, build_services
from .settings import get_settings

load_env()

app = FastAPI(title="Gas Meter", version="0.1.0")
logger = get_logger("gas_meter_api")

PAYMENT_HEADERS = ("x-payment", "payment-signature")


class RegisterRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    email: str | None = None
    website: str | None = None


class FundRequest(BaseModel):
    transactions: int | None = Field(default=None, ge=1)


class RelayRequest(BaseModel):
    transaction: str = ""


class AdminDepositRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    project_id: str = Field(..., alias="projectId", min_length=1)
    amount: int = Field(..., gt=0)
    asset: str = "native"
    tx_signature: str | None = Field(default=None, alias="txSignature")


class SetActiveRequest(BaseModel):
    active: bool


# =============================================================================
# Helpers
# =============================================================================


def _services() -> ServiceContainer:
    services: ServiceContainer | None = getattr(app.state, "services", None)
    if services is None:
        raise ConfigError("Service not initialised")
    return services


def _client_address(request: Request) -> str:
    if get_settings().trust_forwarded_for:
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            return forwarded.split(",")[0].strip()
    if request.client is not None:
        return request.client.host
    return "unknown"


def _throttle(request: Request, *, project_id: str | None = None, metered: bool = False) -> None:
    _services().throttle.check(_client_address(request), project_id=project_id, metered=metered)


def _require_admin(request: Request) -> None:
    expected = get_settings().admin_key
    if not expected:
        raise ConfigError("Admin key not configured")
    provided = request.headers.get("x-admin-key") or ""
    if not secrets.compare_digest(provided.encode("utf-8"), expected.encode("utf-8")):
        raise UnauthorizedError("Unauthorized")


def _payment_proof(request: Request) -> str | None:
    for name in PAYMENT_HEADERS:
        value = request.headers.get(name)
        if value:
            return value
    return None


def _pricing_summary(services: ServiceContainer) -> dict[str, Any]:
    pricing = services.pricing
    native = services.assets[Asset.NATIVE]
    stable = services.assets[Asset.STABLE]
    return {
        "perTransaction": {
            native.symbol: native.to_display(pricing.unit_cost_native),
            stable.symbol: stable.to_display(pricing.unit_cost_stable),
        },
        "stableToNativeRate": str(pricing.stable_to_native_rate),
        "x402PricePerTransactionUsd": pricing.usd_for_units(1, stable.decimals),
    }


def _registration(services: ServiceContainer, project: Project) -> dict[str, Any]:
    wallet = services.upstream.sponsor_wallet
    return {
        "projectId": project.id,
        "name": project.name,
        "tier": project.tier.value,
        "depositAddress": wallet,
        "depositMemo": project.id,
        "pricing": _pricing_summary(services),
        "instructions": [
            f"Send {services.assets[a].symbol} to {wallet} with memo: {project.id}" for a in Asset
        ]
        + ["Or pay per request with x402: POST /fund with an X-Payment header"],
    }


def _balance(services: ServiceContainer, project: Project) -> dict[str, Any]:
    return {
        "projectId": project.id,
        "name": project.name,
        "tier": project.tier.value,
        "perAssetBalance": {asset.value: project.balance(asset) for asset in Asset},
        "heldBalance": {asset.value: int(project.held.get(asset, 0)) for asset in Asset},
        "displayBalance": {
            services.assets[asset].symbol: services.assets[asset].to_display(project.balance(asset))
            for asset in Asset
        },
        "estimatedRemainingUnits": {
            asset.value: units for asset, units in services.pricing.estimated_units(project.balances).items()
        },
        "totalTxCount": project.total_tx_count,
        "active": project.active,
        "lastDeposit": project.last_deposit,
        "lastPayment": project.last_payment,
        "lastTx": project.last_tx,
    }


def _payment_required_response(
    services: ServiceContainer,
    shortfall: FundingShortfall | None,
    *,
    units: int | None = None,
) -> JSONResponse:
    requirement = shortfall.requirement if shortfall else services.verifier.requirement(units)
    document = shortfall.payment_requirement if shortfall else services.verifier.payment_required(requirement)
    body: dict[str, Any] = {
        "error": "Payment Required",
        "code": ErrorCode.INSUFFICIENT_BALANCE.value,
        "x402": document,
    }
    if shortfall is not None:
        body.update(
            {
                "message": "Insufficient balance for sponsored transaction",
                "requiredAsset": shortfall.required_asset.value,
                "receivingAddress": shortfall.receiving_address,
                "requiredAmount": shortfall.required_amount,
                "attachedNoteConvention": shortfall.attached_note,
            }
        )
    return JSONResponse(
        status_code=402,
        content=body,
        headers={"X-Payment-Required": services.verifier.payment_required_header(requirement)},
    )


@app.exception_handler(GasMeterError)
async def _gas_meter_error(request: Request, exc: GasMeterError) -> JSONResponse:
    headers: dict[str, str] = {}
    if isinstance(exc, RateLimitedError) and exc.retry_after is not None:
        headers["Retry-After"] = str(max(1, math.ceil(exc.retry_after)))
    if exc.http_status >= 500:
        logger.log_error(exc, path=request.url.path)
    return JSONResponse(status_code=exc.http_status, content=exc.to_response(), headers=headers)


# =============================================================================
# Lifecycle
# =============================================================================


@app.on_event("startup")
async def _startup() -> None:
    settings = get_settings()
    configure_logging(settings.log_level, json_output=settings.log_json)
    services = await build_services(settings)
    app.state.services = services
    for reconciler in services.reconcilers:
        reconciler.start()


@app.on_event("shutdown")
async def _shutdown() -> None:
    services: ServiceContainer | None = getattr(app.state, "services", None)
    if services is not None:
        await services.close()


# =============================================================================
# Routes
# =============================================================================


@app.get("/healthz")
@app.get("/health")
async def health() -> dict[str, Any]:
    projects = await _services().ledger.list_projects()
    return {"status": "ok", "projects": len(projects)}


async def _register(request: Request, req: RegisterRequest, tier: Tier) -> dict[str, Any]:
    _throttle(request)
    services = _services()
    project = await services.ledger.create(name=req.name, tier=tier, email=req.email, website=req.website)
    logger.info("Project registered", project_id=project.id, tier=tier.value)
    return _registration(services, project)


@app.post("/register")
async def register(req: RegisterRequest, request: Request) -> dict[str, Any]:
    return await _register(request, req, Tier.SPONSORED)


@app.post("/payg/register")
@app.post("/free/register")
async def register_payg(req: RegisterRequest, request: Request) -> dict[str, Any]:
    return await _register(request, req, Tier.PAY_AS_YOU_GO)


@app.get("/balance/{project_id}")
@app.get("/payg/balance/{project_id}")
@app.get("/free/balance/{project_id}")
async def balance(project_id: str, request: Request) -> dict[str, Any]:
    _throttle(request)
    services = _services()
    project = await services.ledger.get(project_id)
    return _balance(services, project)


@app.get("/balance")
async def balance_by_key(request: Request) -> dict[str, Any]:
    _throttle(request)
    project_id = request.headers.get("x-api-key") or request.headers.get("x-project-id")
    if not project_id:
        raise ValidationError("X-API-Key header required")
    services = _services()
    project = await services.ledger.get(project_id)
    return _balance(services, project)


@app.get("/deposit-info/{project_id}")
async def deposit_info(project_id: str, request: Request) -> dict[str, Any]:
    _throttle(request)
    services = _services()
    project = await services.ledger.get(project_id)
    pricing = services.pricing
    accepted = []
    for asset in Asset:
        config = services.assets[asset]
        if asset is Asset.NATIVE:
            credited = {"creditedAs": Asset.NATIVE.value, "rate": "1"}
        else:
            credited = {"creditedAs": Asset.NATIVE.value, "rate": str(pricing.stable_to_native_rate)}
        accepted.append(
            {"asset": asset.value, "symbol": config.symbol, "decimals": config.decimals, "mint": config.mint, **credited}
        )
    return {
        "projectId": project.id,
        "tier": project.tier.value,
        "depositAddress": services.upstream.sponsor_wallet,
        "memo": project.id,
        "memoConvention": "Attach the project id, exactly, as the transaction memo.",
        "acceptedAssets": accepted,
        "pricing": _pricing_summary(services),
    }


@app.post("/fund")
async def fund(request: Request, req: FundRequest | None = None) -> Any:
    _throttle(request)
    services = _services()
    project_id = request.headers.get("x-project-id")
    if not project_id:
        raise ValidationError("X-Project-ID header required")
    project = await services.ledger.get(project_id)

    units = req.transactions if req is not None else None
    proof = _payment_proof(request)
    if not proof:
        return _payment_required_response(services, None, units=units)

    requirement = services.verifier.requirement(units)
    result = await services.verifier.apply(project.id, proof, requirement)
    project = await services.ledger.get(project.id)
    return {
        "success": True,
        "projectId": project.id,
        "unitsFunded": result.settled_units,
        "credited": result.credited,
        "applied": result.applied,
        "reference": result.reference,
        "balance": _balance(services, project)["perAssetBalance"],
    }


@app.post("/sign_and_send")
async def sign_and_send(req: RelayRequest, request: Request) -> Any:
    project_id = request.headers.get("x-project-id")
    _throttle(request, project_id=project_id, metered=True)
    services = _services()
    request_id = generate_request_id()

    with logger.bind(request_id=request_id, project_id=project_id):
        outcome = await services.gateway.relay(
            project_id,
            req.transaction,
            _payment_proof(request),
            request_id=request_id,
        )
    if isinstance(outcome, FundingShortfall):
        return _payment_required_response(services, outcome)

    symbol = services.assets[outcome.funding_source].symbol
    body: dict[str, Any] = {
        "signature": outcome.signature,
        "fundingSourceUsed": outcome.funding_source.value,
        "remainingBalance": outcome.remaining_balance,
        "remainingDisplay": {symbol: services.assets[outcome.funding_source].to_display(outcome.remaining_balance)},
        "charged": outcome.charged,
        "tier": outcome.tier.value,
        "requestId": request_id,
    }
    if outcome.payment is not None:
        body["payment"] = {
            "unitsFunded": outcome.payment.settled_units,
            "reference": outcome.payment.reference,
            "applied": outcome.payment.applied,
        }
    return body


@app.get("/x402")
async def x402_info(request: Request) -> dict[str, Any]:
    _throttle(request)
    services = _services()
    stable = services.assets[Asset.STABLE]
    requirement = services.verifier.requirement()
    return {
        "x402Version": 1,
        "network": services.upstream.network,
        "payTo": services.upstream.sponsor_wallet,
        "asset": {"address": stable.mint, "symbol": stable.symbol, "decimals": stable.decimals},
        "pricePerTransactionUsd": services.pricing.usd_for_units(1, stable.decimals),
        "facilitator": services.upstream.facilitator_url,
        "headers": {"payment": "X-Payment or Payment-Signature", "project": "X-Project-ID"},
        "endpoints": {"fund": "POST /fund", "relay": "POST /sign_and_send"},
        "sample": services.verifier.payment_required(requirement),
    }


@app.get("/admin/projects")
async def admin_projects(request: Request) -> dict[str, Any]:
    _require_admin(request)
    services = _services()
    projects = sorted(await services.ledger.list_projects(), key=lambda p: p.created_at, reverse=True)
    return {
        "stats": {
            "totalProjects": len(projects),
            "activeProjects": sum(1 for p in projects if p.active),
            "totalTxCount": sum(p.total_tx_count for p in projects),
            "totalBalances": {asset.value: sum(p.balance(asset) for p in projects) for asset in Asset},
            "byTier": {tier.value: sum(1 for p in projects if p.tier is tier) for tier in Tier},
        },
        "projects": [p.to_dict() for p in projects],
    }


@app.post("/admin/deposit")
async def admin_deposit(req: AdminDepositRequest, request: Request) -> dict[str, Any]:
    _require_admin(request)
    services = _services()
    try:
        asset = Asset.parse(req.asset)
    except ValueError:
        raise ValidationError(f"Unknown asset {req.asset!r}") from None
    reference = f"admin:{req.tx_signature}" if req.tx_signature else None
    result = await services.ledger.credit(
        req.project_id,
        asset,
        req.amount,
        reference=reference,
        kind="deposit",
        detail={"source": "admin", "signature": req.tx_signature},
    )
    logger.info(
        "Manual deposit",
        project_id=req.project_id,
        asset=asset.value,
        amount=req.amount,
        applied=result.applied,
    )
    return {
        "success": True,
        "applied": result.applied,
        "projectId": req.project_id,
        "asset": asset.value,
        "balance": result.balance_after,
    }


@app.post("/admin/projects/{project_id}/active")
async def admin_set_active(project_id: str, req: SetActiveRequest, request: Request) -> dict[str, Any]:
    _require_admin(request)
    project = await _services().ledger.set_active(project_id, req.active)
    logger.info("Project activation changed", project_id=project.id, active=project.active)
    return {"projectId": project.id, "active": project.active}
