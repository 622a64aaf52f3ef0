"""API route handlers for the local status endpoints."""

import logging
from typing import Optional

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from fieldagent.agent import Agent
from fieldagent.api.models import (
    ConfigUpdateRequest,
    ErrorResponse,
    StatusResponse,
    SuccessResponse,
)

router = APIRouter(prefix="/api/v1.0")
logger = logging.getLogger("fieldagent.api")


def _agent(request: Request) -> Optional[Agent]:
    return getattr(request.app.state, "agent", None)


def _error(code: int, msg: str) -> JSONResponse:
    return JSONResponse(status_code=200, content=ErrorResponse(code=code, msg=msg).model_dump())


@router.get("/status", response_model=StatusResponse)
async def get_status(request: Request):
    """GET /api/v1.0/status - Query agent state.

    Response format:
        {
            "code": 200,
            "msg": "success",
            "data": {
                "identification": "printer-0042",
                "installed": {"agent": "1.0.0", "deployment": "2.3.1"},
                "download": {"url": "...", "bytes_read": 4096, "total_bytes": 10000},
                "feedback_channels": ["auditlog"],
                "controller": {"running": true, "installers": {...}, ...}
            }
        }
    """
    agent = _agent(request)
    if agent is None:
        return _error(503, "Agent not running")
    return StatusResponse(data=agent.status())


@router.put("/config", response_model=SuccessResponse)
async def put_config(request: Request, update: ConfigUpdateRequest):
    """PUT /api/v1.0/config - Change configuration fields.

    Args:
        update: Field values to change

    Returns:
        SuccessResponse with the list of changed fields and the new config

    Errors (code field):
        400 if a key is unknown or a value fails validation
        503 if the agent is not running
    """
    agent = _agent(request)
    if agent is None:
        return _error(503, "Agent not running")

    changes = update.model_extra or {}
    if not changes:
        return _error(400, "No configuration fields given")
    try:
        config = agent.config_handler.update(**changes)
    except ValidationError as e:
        logger.warning(f"Rejected configuration update: {e}")
        return _error(400, f"Invalid configuration: {e.errors(include_url=False)}")
    except ValueError as e:
        logger.warning(f"Rejected configuration update: {e}")
        return _error(400, str(e))
    except OSError as e:
        logger.error(f"Failed to persist configuration: {e}")
        return _error(500, f"Failed to persist configuration: {e}")

    return SuccessResponse(data={"config": config.model_dump(mode="json", exclude={"auth_password"})})
