"""
Status API for healthguard.

Read-only views of health, backups, incidents, rollbacks and alerts, plus a
manual rollback trigger. Run with `python dashboard/app.py` or uvicorn.
"""

import logging

from fastapi import BackgroundTasks, FastAPI, HTTPException
from pydantic import BaseModel

from healthguard import __version__
from healthguard.errors import ConcurrencyConflict
from healthguard.models import AUTO_LEVEL, RollbackTrigger, parse_level
from healthguard.workflow import Components, build_components, run_rollback

logger = logging.getLogger(__name__)

# Built lazily from settings; tests inject their own
_components: Components | None = None

app = FastAPI(title="healthguard status API", version=__version__)


class RollbackBody(BaseModel):
    """Manual rollback request."""

    level: str = AUTO_LEVEL
    target: str | None = None


def set_components(components: Components) -> None:
    global _components
    _components = components


def reset_components() -> None:
    global _components
    _components = None


def get_components() -> Components:
    global _components
    if _components is None:
        _components = build_components()
    return _components


@app.get("/api/health")
def api_health(live: bool = False):
    """Latest HealthStatus; runs a check when none exists yet or live=true."""
    aggregator = get_components().aggregator
    status = aggregator.latest
    if live or status is None:
        status = aggregator.check()
    return status.model_dump(mode="json")


@app.get("/api/backups")
def api_backups():
    backups = get_components().backups
    known_good = backups.last_known_good()
    return {
        "last_known_good": known_good.id if known_good else None,
        "backups": [
            {
                "id": b.id,
                "type": b.type.value,
                "created_at": b.manifest.created_at.isoformat(),
                "total_size": b.total_size,
                "verified": b.verified,
                "git_commit": b.manifest.git_commit,
            }
            for b in backups.list()
        ],
    }


@app.get("/api/incidents")
def api_incidents(limit: int = 20):
    incidents = get_components().incidents.list(limit=limit)
    return {
        "incidents": [
            {
                "id": i.id,
                "trigger": i.trigger,
                "created_at": i.created_at.isoformat(),
                "partial": i.partial,
            }
            for i in incidents
        ]
    }


@app.get("/api/incidents/{incident_id}")
def api_incident_detail(incident_id: str):
    incident = get_components().incidents.get(incident_id)
    if incident is None:
        raise HTTPException(status_code=404, detail="Incident not found")
    return incident.model_dump(mode="json")


@app.get("/api/rollbacks")
def api_rollbacks(limit: int = 20):
    attempts = get_components().orchestrator.history(limit=limit)
    return {"rollbacks": [a.model_dump(mode="json") for a in reversed(attempts)]}


@app.get("/api/alerts")
def api_alerts(limit: int = 50):
    events = get_components().alerts.recent(limit=limit)
    return {"alerts": [e.model_dump(mode="json") for e in reversed(events)]}


def _run_manual_rollback(components: Components, level: str, target: str | None) -> None:
    try:
        run_rollback(components, RollbackTrigger.MANUAL, level, target_revision=target)
    except ConcurrencyConflict as e:
        logger.warning("Manual rollback skipped: %s", e)
    except Exception as e:
        logger.error("Manual rollback failed: %s", e, exc_info=True)


@app.post("/api/rollback", status_code=202)
def api_rollback(body: RollbackBody, background_tasks: BackgroundTasks):
    """Schedule a manual rollback; 409 while another rollback holds the lease."""
    try:
        level = parse_level(body.level)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e)) from e
    components = get_components()
    if components.orchestrator.in_progress:
        holder = components.orchestrator.lock.holder() or {}
        raise HTTPException(
            status_code=409,
            detail=f"Rollback already in progress (held by {holder.get('owner', 'unknown')})",
        )
    background_tasks.add_task(_run_manual_rollback, components, level, body.target)
    return {"accepted": True, "level": level.value if hasattr(level, "value") else level, "target": body.target}


if __name__ == "__main__":
    import uvicorn

    from healthguard.config import get_settings

    settings = get_settings()
    uvicorn.run(app, host=settings.status_api_host, port=settings.status_api_port)
