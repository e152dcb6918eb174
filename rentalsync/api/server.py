"""
RentalSync - FastAPI Trigger Server

HTTP surface for timers and operators.

Endpoints:
- GET /health - Liveness and store check
- POST /trigger - Run reconcile/bill/both/sync_invoices for one tenant
- POST /trigger/all - Run every active tenant
- GET /tenants/{tenant_id}/integration-logs - Read back external call audit
- POST /tenants/{tenant_id}/test-connection - Check telemetry or gateway credentials
- POST /tenants/{tenant_id}/devices/{device_id}/command - Block/unblock a tracker
- POST /webhooks/gateway - Apply a gateway charge status event
- DELETE /tenants/{tenant_id}/vehicles - Explicit bulk vehicle delete
"""

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Optional
import os
import structlog

from fastapi import FastAPI, HTTPException, Depends, Header, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from .. import __version__
from ..billing.status import InvoiceStatusService
from ..config import Settings, get_settings
from ..persistence.database import Database, get_database
from ..persistence.repository import IntegrationLogRepository, TenantRepository, VehicleRepository
from ..scheduler import ACTIONS, TriggerService

logger = structlog.get_logger()


# ============================================================================
# Pydantic Models
# ============================================================================

class TriggerRequest(BaseModel):
    """Run jobs for one tenant."""
    model_config = ConfigDict(populate_by_name=True)

    tenant_id: Optional[str] = Field(None, alias="tenantId", description="Tenant identifier")
    action: str = Field(default="both", description="reconcile, bill, both or sync_invoices")
    force: bool = Field(default=False, description="Ignore the minimum sync interval")


class TriggerAllRequest(BaseModel):
    """Run jobs for every active tenant."""
    action: str = Field(default="both")
    force: bool = Field(default=False)


class ConnectionTestRequest(BaseModel):
    service: str = Field(..., description="telemetry or gateway")


class DeviceCommandRequest(BaseModel):
    command: str = Field(..., description="block or unblock")


class GatewayEvent(BaseModel):
    """Charge status change reported by the payment gateway."""
    tenant_id: str
    charge_id: str
    status: str
    paid_at: Optional[str] = None


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    version: str
    database: str
    uptime_seconds: float


# ============================================================================
# Application State
# ============================================================================

class AppState:
    """Application state container."""

    def __init__(self, settings: Optional[Settings] = None, db: Optional[Database] = None):
        self.settings = settings or get_settings()
        self.db = db or get_database(self.settings.database_url)
        self.trigger = TriggerService(self.db, self.settings)
        self.status = InvoiceStatusService(self.db)
        self.tenants = TenantRepository(self.db)
        self.vehicles = VehicleRepository(self.db)
        self.logs = IntegrationLogRepository(self.db)
        self.start_time = datetime.now(timezone.utc)


app_state: Optional[AppState] = None


# ============================================================================
# Application Factory
# ============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    global app_state
    logger.info("rentalsync_starting", version=__version__)
    app_state = AppState()
    yield
    app_state.trigger.cancel()
    logger.info("rentalsync_stopping")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="RentalSync",
        description="""
# Vehicle Rental Sync and Billing Engine

- **Reconciliation**: customers and vehicles imported from the fleet telemetry provider, idempotently
- **Recurring billing**: one invoice per contract cycle, charged through the payment gateway over mTLS
- **Integration log**: every external call recorded per tenant
        """,
        version=__version__,
        lifespan=lifespan,
    )

    # CORS middleware
    application.add_middleware(
        CORSMiddleware,
        allow_origins=os.environ.get("CORS_ORIGINS", "*").split(","),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    return application


app = create_app()


# ============================================================================
# Dependencies
# ============================================================================

def get_state() -> AppState:
    """Get application state, building it on first use outside the lifespan."""
    global app_state
    if app_state is None:
        app_state = AppState()
    return app_state


def verify_api_key(x_api_key: str = Header(..., alias="X-API-Key")) -> str:
    """Verify API key."""
    if x_api_key != get_settings().api_key:
        raise HTTPException(status_code=401, detail="Invalid API key")
    return x_api_key


def _require_tenant(state: AppState, tenant_id: str) -> None:
    if state.tenants.get(tenant_id) is None:
        raise HTTPException(status_code=404, detail="Unknown tenant")


# ============================================================================
# Endpoints
# ============================================================================

@app.get("/health", response_model=HealthResponse, tags=["System"])
def health_check(state: AppState = Depends(get_state)):
    """Health check endpoint."""
    uptime = (datetime.now(timezone.utc) - state.start_time).total_seconds()
    try:
        state.db.ping()
        database = "ok"
    except Exception as e:
        logger.error("health_database_unavailable", error=str(e))
        database = "unavailable"
    return HealthResponse(
        status="healthy" if database == "ok" else "degraded",
        version=__version__,
        database=database,
        uptime_seconds=uptime,
    )


@app.post("/trigger", tags=["Jobs"])
def trigger(
    request: TriggerRequest,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    """
    Run reconciliation and/or billing for one tenant.

    Always answers with the summary shape; partial failures are 200.
    """
    result = state.trigger.run(request.tenant_id, request.action, force=request.force)
    return JSONResponse(status_code=result.status_code, content=result.to_dict())


@app.post("/trigger/all", tags=["Jobs"])
def trigger_all(
    request: TriggerAllRequest,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    """Run every active tenant through the worker pool."""
    if request.action not in ACTIONS:
        raise HTTPException(status_code=400, detail=f"action must be one of: {', '.join(ACTIONS)}")

    results = state.trigger.run_all(request.action, force=request.force)
    return {
        "tenants": len(results),
        "results": {
            tenant_id: {"status_code": r.status_code, **r.to_dict()}
            for tenant_id, r in results.items()
        },
    }


@app.get("/tenants/{tenant_id}/integration-logs", tags=["Audit"])
def get_integration_logs(
    tenant_id: str,
    service: Optional[str] = None,
    limit: int = Query(default=100, ge=1, le=1000),
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    """Query a tenant's integration log, newest first."""
    entries = state.logs.list_for_tenant(tenant_id, service=service, limit=limit)
    return {
        "total": len(entries),
        "entries": [e.to_dict() for e in entries],
    }


@app.post("/tenants/{tenant_id}/test-connection", tags=["Integrations"])
def check_connection(
    tenant_id: str,
    request: ConnectionTestRequest,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    """Log in to the telemetry provider or fetch a gateway token with the stored credentials."""
    result = state.trigger.test_connection(tenant_id, request.service)
    return JSONResponse(status_code=result.status_code, content=result.body)


@app.post("/tenants/{tenant_id}/devices/{device_id}/command", tags=["Fleet"])
def send_device_command(
    tenant_id: str,
    device_id: str,
    request: DeviceCommandRequest,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    """Send a block or unblock command to a tracker."""
    result = state.trigger.send_command(tenant_id, device_id, request.command)
    return JSONResponse(status_code=result.status_code, content=result.body)


@app.post("/webhooks/gateway", tags=["Billing"])
def gateway_webhook(
    event: GatewayEvent,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
) -> Dict[str, Any]:
    """Apply a charge status event to the matching invoice."""
    invoice = state.status.apply_gateway_event(event.tenant_id, event.charge_id, event.status, event.paid_at)
    if invoice is None:
        raise HTTPException(status_code=404, detail="No invoice for charge")
    return {
        "invoice_id": invoice.id,
        "status": invoice.status.value,
        "paid_at": invoice.paid_at,
    }


@app.delete("/tenants/{tenant_id}/vehicles", tags=["Fleet"])
def delete_tenant_vehicles(
    tenant_id: str,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    """Delete every vehicle of a tenant. Explicit operator action only."""
    _require_tenant(state, tenant_id)
    deleted = state.vehicles.delete_all(tenant_id)
    return {"tenant_id": tenant_id, "deleted": deleted}


# ============================================================================
# Run
# ============================================================================

def run():
    """Run the server."""
    import uvicorn
    port = int(os.environ.get("PORT", 8000))
    uvicorn.run(
        "rentalsync.api.server:app",
        host="0.0.0.0",
        port=port,
        reload=os.environ.get("DEBUG", "false").lower() == "true",
    )


if __name__ == "__main__":
    run()
