"""Health and stats endpoints.

Learn: Health is "degraded" rather than failing when Redis is down — the
relay keeps its clients connected and resubscribes on its own, so a load
balancer shouldn't pull the instance out of rotation for a broker blip.
"""

from fastapi import APIRouter, Request

from pricerelay import __version__

router = APIRouter()


@router.get("/health")
async def health_check(request: Request):
    """Check server health and broker connectivity."""
    relay = request.app.state.relay
    checks = {"server": "ok", "version": __version__}

    try:
        checks["redis"] = "ok" if await relay.broker.ping() else "error: no pong"
    except Exception as e:
        checks["redis"] = f"error: {e}"

    checks["subscribed"] = relay.subscribed
    checks["sessions"] = len(relay.registry)

    status = (
        "healthy" if checks["redis"] == "ok" and relay.subscribed else "degraded"
    )
    return {"status": status, **checks}


@router.get("/stats")
async def relay_stats(request: Request):
    """Relay counters: sessions, relayed/republished messages, failures."""
    return request.app.state.relay.get_stats()
