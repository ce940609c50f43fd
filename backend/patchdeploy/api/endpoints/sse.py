from fastapi import APIRouter, Depends
from fastapi.responses import StreamingResponse
import asyncio
import json
import logging
from typing import Dict, Any, Optional

from patchdeploy.api.dependencies import get_engine, http_error
from patchdeploy.core.config import settings
from patchdeploy.core.errors import DeploymentError
from patchdeploy.services.deployment_service import DeploymentEngine
from patchdeploy.services.status_channel import Subscription

router = APIRouter()
logger = logging.getLogger(__name__)


@router.get("/{deployment_id}/events")
async def deployment_events(
    deployment_id: str,
    engine: DeploymentEngine = Depends(get_engine)
):
    """
    Server-Sent Events (SSE) stream of status and log updates for a deployment.

    The stream ends after the terminal update.

    Args:
        deployment_id: The deployment to follow
        engine: The deployment engine

    Returns:
        A streaming response with SSE events
    """
    try:
        subscription = await engine.subscribe(deployment_id)
    except DeploymentError as e:
        raise http_error(e)

    logger.info(f"New SSE connection for deployment: {deployment_id}")

    return StreamingResponse(
        event_stream(subscription, settings.SSE_HEARTBEAT_SECONDS),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
        }
    )


async def event_stream(subscription: Subscription, heartbeat_seconds: float):
    """
    Yield SSE messages for a subscription, with heartbeat comments while idle.
    """
    try:
        while True:
            try:
                update = await subscription.get(timeout=heartbeat_seconds)
            except asyncio.TimeoutError:
                yield ": heartbeat\n\n"
                continue

            if update is None:
                break
            yield format_sse_event(
                data=update.model_dump(mode="json"),
                event="terminal" if update.terminal else update.event
            )
    finally:
        subscription.close()
        logger.info(f"SSE stream closed for deployment: {subscription.deployment_id}")


def format_sse_event(data: Dict[str, Any], event: Optional[str] = None) -> str:
    """
    Format a server-sent event.

    Args:
        data: The data to send
        event: The event type

    Returns:
        A formatted SSE event string
    """
    message = f"data: {json.dumps(data)}\n"
    if event:
        message = f"event: {event}\n{message}"
    message += "\n"
    return message
