"""Request dependencies shared by the API routers."""
from __future__ import annotations

from fastapi import Request

from renalscan.agent.orchestrator import Orchestrator
from renalscan.config import get_settings


def get_orchestrator(request: Request) -> Orchestrator:
    """The orchestrator built at startup; built on first use if startup did not run."""
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        orchestrator = Orchestrator.from_settings(get_settings())
        request.app.state.orchestrator = orchestrator
    return orchestrator
