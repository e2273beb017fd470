"""
Operator status API.

Exposes health, status and the failed-command ledger over HTTP, plus the
operator actions (retry, compensate, emergency stop).
"""

from typing import Any

from fastapi import APIRouter, FastAPI, status
from fastapi.responses import JSONResponse

from .errors import ConfigurationError, ConnectivityError
from .models import DedupEntry
from .relayer import GMPRelayer


def _failed_entry_payload(command_id: str, entry: DedupEntry) -> dict[str, Any]:
    record = entry.record or {}
    return {
        "commandId": command_id,
        "destinationChain": record.get("destination_chain"),
        "commandType": record.get("command_type"),
        "attempts": entry.attempts,
        "error": entry.error,
        "retryable": entry.retryable,
        "txHash": entry.tx_hash,
        "updatedAt": entry.updated_at,
        "event": record.get("event"),
    }


def api_create_relayer_router(relayer: GMPRelayer) -> APIRouter:
    """Create the router exposing health, status and operator endpoints.

    Args:
        relayer: Running relayer instance

    Returns:
        APIRouter: Router with the operator endpoints

    Raises:
        ValueError: Raised when relayer is None
    """
    if relayer is None:
        raise ValueError("relayer must not be None")

    router = APIRouter()

    @router.get("/health", tags=["health"])
    async def api_health_status() -> JSONResponse:
        """Return the health snapshot; 503 when degraded."""
        snapshot = await relayer.health.get_health()
        status_code = status.HTTP_200_OK if snapshot.is_healthy else status.HTTP_503_SERVICE_UNAVAILABLE
        return JSONResponse(content=snapshot.to_dict(), status_code=status_code)

    @router.get("/status", tags=["health"])
    def api_relayer_status() -> dict[str, Any]:
        stats = relayer.get_stats()
        stats["chains"] = {name: client.get_status() for name, client in relayer.clients.items()}
        return stats

    @router.get("/failed-commands", tags=["commands"])
    def api_failed_commands() -> dict[str, Any]:
        failed = relayer.dedup.failed_entries()
        return {
            "count": len(failed),
            "commands": [
                _failed_entry_payload(command_id, entry) for command_id, entry in failed.items()
            ],
        }

    @router.get("/failed-commands/{command_id}", tags=["commands"])
    def api_failed_command(command_id: str) -> JSONResponse:
        entry = relayer.dedup.failed_entries().get(command_id)
        if entry is None:
            return JSONResponse(
                content={"error": f"Failed command {command_id} not found"},
                status_code=status.HTTP_404_NOT_FOUND,
            )
        return JSONResponse(content=_failed_entry_payload(command_id, entry), status_code=status.HTTP_200_OK)

    @router.post("/failed-commands/{command_id}/retry", tags=["commands"])
    async def api_retry_failed_command(command_id: str) -> JSONResponse:
        """Re-queue a failed command, reverted ones included."""
        try:
            command = relayer.retry_failed(command_id)
        except LookupError as error:
            return JSONResponse(content={"error": str(error)}, status_code=status.HTTP_404_NOT_FOUND)
        except ValueError as error:
            return JSONResponse(content={"error": str(error)}, status_code=status.HTTP_409_CONFLICT)

        return JSONResponse(
            content={"commandId": command.command_id, "status": command.status.value},
            status_code=status.HTTP_202_ACCEPTED,
        )

    @router.post("/compensate/{command_id}", tags=["commands"])
    async def api_compensate(command_id: str) -> JSONResponse:
        """Queue a refund on the source chain for a failed token-carrying command."""
        try:
            compensation = await relayer.trigger_compensation(command_id)
        except LookupError as error:
            return JSONResponse(content={"error": str(error)}, status_code=status.HTTP_404_NOT_FOUND)
        except ConfigurationError as error:
            return JSONResponse(content={"error": str(error)}, status_code=status.HTTP_400_BAD_REQUEST)
        except ConnectivityError as error:
            return JSONResponse(content={"error": str(error)}, status_code=status.HTTP_503_SERVICE_UNAVAILABLE)
        except ValueError as error:
            return JSONResponse(content={"error": str(error)}, status_code=status.HTTP_409_CONFLICT)

        return JSONResponse(
            content={
                "commandId": command_id,
                "compensationCommandId": compensation.command_id,
                "destinationChain": compensation.destination_chain,
            },
            status_code=status.HTTP_202_ACCEPTED,
        )

    @router.post("/emergency-stop", tags=["commands"])
    async def api_emergency_stop() -> dict[str, str]:
        relayer.emergency_stop()
        return {"status": "stopping"}

    return router


def create_api_application(relayer: GMPRelayer) -> FastAPI:
    """Create the FastAPI application serving the operator endpoints."""
    application = FastAPI(title="GMP Relayer")
    application.include_router(api_create_relayer_router(relayer))
    return application
