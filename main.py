"""Sift — alert ingestion endpoint and incident API.

This file handles three concerns:

1. Intake — receives pushed alert deliveries, verifies their signature,
   and feeds them through the named source adapter.

2. Query API — read endpoints the dashboard polls for incidents,
   occurrences, remediation actions and telemetry.

3. Operator controls — approving or rejecting gated actions, detaching or
   attaching incident members, and reloading the policy.

Flow after a delivery arrives:
    POST /alerts/{source}
        → verify X-Sift-Signature (when SIFT_INGEST_SECRET is set)
        → parse JSON
        → adapter normalizes → dedup → correlation queue
        → return 202 + accepted ids / drop reasons

Run locally:
    uvicorn main:app --reload
"""

import json
import logging
import logging.handlers
import os
import pathlib
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

load_dotenv()

from core.errors import PolicyError, StaleIncidentReference
from core.pipeline import SiftPipeline
from core.policy_store import DEFAULT_RELOAD_SECONDS, PolicyStore
from core.query import IncidentDetail
from executors.dry_run import DryRunExecutor
from executors.http import WebhookExecutor
from executors.router import ExecutorRouter
from ingest.signing import SIGNATURE_HEADER, verify_signature
from llm.openrouter import OpenRouterClient
from llm.scorer import LLMScorer
from schemas.incident import Incident, IncidentState
from schemas.occurrence import Occurrence
from schemas.remediation import ActionKind, RemediationAction

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

LOG_FILE = pathlib.Path(__file__).parent / "sift.log"
LOG_FORMAT = "%(asctime)s  %(levelname)-8s  %(name)s  %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_file_handler = logging.handlers.RotatingFileHandler(
    LOG_FILE, maxBytes=1_000_000, backupCount=3, encoding="utf-8",
)
_file_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT))

_root_logger = logging.getLogger()
_root_logger.setLevel(logging.INFO)
_root_logger.addHandler(_file_handler)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Pipeline setup
# ---------------------------------------------------------------------------

def build_pipeline() -> SiftPipeline:
    """Wire a pipeline from environment settings.

    SIFT_ACTION_WEBHOOK_URL selects the webhook executor (dry-run otherwise);
    SIFT_TICKET_WEBHOOK_URL routes ticket actions separately;
    SIFT_LLM_SCORER_MODEL enables the LLM-blended correlation scorer.
    """
    policy_store = PolicyStore(os.environ.get("SIFT_POLICY_FILE", "policy.yaml"))

    action_url = os.environ.get("SIFT_ACTION_WEBHOOK_URL")
    router = ExecutorRouter(default=WebhookExecutor(action_url) if action_url else DryRunExecutor())
    if not action_url:
        logger.warning("SIFT_ACTION_WEBHOOK_URL not set — remediation actions run in dry-run mode.")
    ticket_url = os.environ.get("SIFT_TICKET_WEBHOOK_URL")
    if ticket_url:
        router.register(ActionKind.TICKET, WebhookExecutor(ticket_url))

    scorer = None
    model = os.environ.get("SIFT_LLM_SCORER_MODEL")
    if model:
        scorer = LLMScorer(OpenRouterClient(model))
        logger.info("Correlation scores blended with LLM model '%s'.", model)

    pipeline = SiftPipeline(
        policy_store=policy_store,
        executor=router,
        scorer=scorer,
        policy_reload_seconds=float(os.environ.get("SIFT_POLICY_RELOAD_SECONDS", DEFAULT_RELOAD_SECONDS)),
    )

    poll_url = os.environ.get("SIFT_POLL_URL")
    if poll_url:
        pipeline.add_poller(
            poll_url,
            os.environ.get("SIFT_POLL_SOURCE", "generic"),
            float(os.environ.get("SIFT_POLL_INTERVAL_SECONDS", "30")),
        )
    return pipeline


# ---------------------------------------------------------------------------
# Request bodies
# ---------------------------------------------------------------------------

class MemberRequest(BaseModel):
    fingerprint: str


class ApprovalRequest(BaseModel):
    approver: str


class RejectionRequest(BaseModel):
    reason: str


class PolicyReloadRequest(BaseModel):
    """Optional inline YAML. Without it the policy file is re-read."""
    yaml: str | None = None


# ---------------------------------------------------------------------------
# App factory
# ---------------------------------------------------------------------------

def create_app(
    pipeline: SiftPipeline | None = None,
    ingest_secret: str | None = None,
    run_background: bool = True,
) -> FastAPI:
    """Build the FastAPI app around a pipeline.

    Args:
        pipeline: Pipeline to serve. Built from the environment when None.
        ingest_secret: Shared HMAC secret for POST /alerts. Falls back to
            SIFT_INGEST_SECRET; when neither is set, signatures are not checked.
        run_background: Start the correlation worker and timers with the app.
            Tests pass False so every request is processed inline.
    """
    pipeline = pipeline or build_pipeline()
    secret = ingest_secret if ingest_secret is not None else os.environ.get("SIFT_INGEST_SECRET", "")

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if run_background:
            await pipeline.start()
        try:
            yield
        finally:
            if run_background:
                await pipeline.stop()

    app = FastAPI(title="Sift", lifespan=lifespan)
    app.state.pipeline = pipeline

    # ALLOWED_ORIGINS env var overrides the default for production deployments.
    _origins = os.environ.get("ALLOWED_ORIGINS", "http://localhost:3000").split(",")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=_origins,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

    # -----------------------------------------------------------------------
    # Health
    # -----------------------------------------------------------------------

    @app.get("/health")
    async def health():
        policy = pipeline.policy_store.current
        return {
            "status": "ok",
            "policy_version": policy.version,
            "automation_allowed": policy.automation_allowed,
            "running": pipeline.running,
        }

    @app.get("/summary")
    async def summary():
        return pipeline.query.summary()

    # -----------------------------------------------------------------------
    # Intake
    # -----------------------------------------------------------------------

    @app.post("/alerts/{source}", status_code=202)
    async def ingest_alerts(source: str, request: Request):
        """Accept one delivery from a named source adapter.

        Returns 202 with the accepted alert ids and any drop reasons. A
        delivery where nothing could be normalized returns 400.
        """
        body = await request.body()

        if secret:
            if not verify_signature(body, request.headers.get(SIGNATURE_HEADER), secret):
                logger.warning("Rejected delivery for '%s': invalid signature.", source)
                raise HTTPException(status_code=401, detail="Invalid signature.")

        if pipeline.ingestor.registry.get(source) is None:
            raise HTTPException(status_code=404, detail=f"Unknown source '{source}'.")

        try:
            raw = json.loads(body)
        except ValueError as exc:
            logger.warning("Rejected delivery for '%s': body is not JSON (%s).", source, exc)
            raise HTTPException(status_code=400, detail=f"Malformed payload: {exc}")

        report = await pipeline.ingest(source, raw)
        if report.dropped and not report.accepted:
            raise HTTPException(status_code=400, detail={"dropped": report.dropped})
        return report.model_dump()

    # -----------------------------------------------------------------------
    # Query API
    # -----------------------------------------------------------------------

    @app.get("/incidents", response_model=list[Incident])
    async def list_incidents(state: IncidentState | None = None):
        return pipeline.query.incidents(state)

    @app.get("/incidents/{incident_id}", response_model=IncidentDetail)
    async def get_incident(incident_id: str):
        detail = pipeline.query.incident(incident_id)
        if detail is None:
            raise HTTPException(status_code=404, detail=f"Incident '{incident_id}' not found.")
        return detail

    @app.get("/occurrences", response_model=list[Occurrence])
    async def list_occurrences(include_resolved: bool = False):
        return pipeline.query.occurrences(include_resolved)

    @app.get("/actions", response_model=list[RemediationAction])
    async def list_actions(incident_id: str | None = None):
        return pipeline.query.actions(incident_id)

    @app.get("/events")
    async def list_events(subject: str | None = None, limit: int = 200):
        return [e.model_dump(mode="json") for e in pipeline.query.events(subject, limit)]

    @app.get("/policy")
    async def get_policy():
        return pipeline.policy_store.current.model_dump(mode="json")

    # -----------------------------------------------------------------------
    # Operator controls
    # -----------------------------------------------------------------------

    @app.post("/actions/{action_id}/approve", response_model=RemediationAction)
    async def approve_action(action_id: str, body: ApprovalRequest):
        try:
            return await pipeline.approve(action_id, body.approver)
        except KeyError as exc:
            raise HTTPException(status_code=404, detail=str(exc))
        except ValueError as exc:
            raise HTTPException(status_code=409, detail=str(exc))

    @app.post("/actions/{action_id}/reject", response_model=RemediationAction)
    async def reject_action(action_id: str, body: RejectionRequest):
        try:
            return await pipeline.reject(action_id, body.reason)
        except KeyError as exc:
            raise HTTPException(status_code=404, detail=str(exc))
        except ValueError as exc:
            raise HTTPException(status_code=409, detail=str(exc))

    @app.post("/incidents/{incident_id}/detach", response_model=Incident)
    async def detach_member(incident_id: str, body: MemberRequest):
        try:
            return await pipeline.detach(incident_id, body.fingerprint)
        except KeyError as exc:
            raise HTTPException(status_code=404, detail=str(exc))
        except StaleIncidentReference as exc:
            raise HTTPException(status_code=409, detail=str(exc))

    @app.post("/incidents/{incident_id}/attach", response_model=Incident)
    async def attach_member(incident_id: str, body: MemberRequest):
        try:
            return await pipeline.attach(incident_id, body.fingerprint)
        except KeyError as exc:
            raise HTTPException(status_code=404, detail=str(exc))
        except (ValueError, StaleIncidentReference) as exc:
            raise HTTPException(status_code=409, detail=str(exc))

    @app.post("/policy/reload")
    async def reload_policy(body: PolicyReloadRequest | None = None):
        try:
            if body is not None and body.yaml:
                policy = pipeline.load_policy_text(body.yaml)
            else:
                if pipeline.policy_store.path is None:
                    raise HTTPException(status_code=400, detail="No policy file configured.")
                policy = pipeline.reload_policy()
        except PolicyError as exc:
            raise HTTPException(status_code=400, detail=str(exc))
        return {
            "version": policy.version,
            "label": policy.label,
            "issues": policy.issues,
            "automation_allowed": policy.automation_allowed,
        }

    return app


app = create_app()
