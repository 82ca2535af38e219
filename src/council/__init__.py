"""
Council: test-first multi-agent code generation.

A feature request in natural language goes through a council of model-backed
roles (Planner, Context-Gatherer, Test Generator, Code Generator, Refiner,
Reviewer). Tests are written before the implementation, every target
language is verified by really executing its suite in an isolated workspace,
failing languages are refined and re-tested up to a bounded number of
attempts, and a verified result is published as an unreviewed change-set
awaiting human approval.

Quick Start:
    >>> from council.config import setup_container
    >>>
    >>> container = setup_container()
    >>> orchestrator = container.get("orchestrator")
    >>> run_id = await orchestrator.trigger(
    ...     "Add a /profile endpoint returning the user's name and email",
    ...     {"python", "typescript"},
    ...     "feature/profile",
    ... )
    >>> run = await orchestrator.wait(run_id)
    >>> run.status, run.attempts_by_language()

API Server:
    $ council serve
    $ curl -X POST http://localhost:8000/runs -H 'Content-Type: application/json' \
      -d '{"feature_description": "...", "target_languages": ["go"],
           "requested_branch_name": "feature/x"}'

Configuration:
    Environment variables with the ``COUNCIL_`` prefix and ``__`` nesting:
    - COUNCIL_MODELS__GENERATOR__BASE_URL=http://models:8080
    - COUNCIL_ORCHESTRATOR__MAX_ATTEMPTS=3
    - COUNCIL_STORAGE__ROOT=/var/lib/council
    - COUNCIL_OBSERVABILITY__LOG_LEVEL=DEBUG
"""

__version__ = "0.3.0"

from .config.settings import Settings
from .core.orchestrator import Orchestrator
from .models import Run, RunState, RunStatus

__all__ = ["Orchestrator", "Run", "RunState", "RunStatus", "Settings"]
