"""FastAPI application entry point for the session manager.

Exposes the two triggers of the pipeline, a labeled-issue webhook and a
direct user message, plus conversation lookup, health and metrics.

Endpoints:
- POST /webhooks/github: labeled-issue ingress
- POST /threads/{thread_id}/messages: direct user message → pipeline
- GET /threads/{thread_id}: stored conversation
- GET /health: liveness
- GET /metrics: Prometheus metrics
"""

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from typing import Optional, Set

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel, Field

from src.manager.classifier.agent import (
    ClassificationFailedError,
    NoUserMessageError,
    RouteClassifier,
)
from src.manager.config import ManagerSettings, get_settings
from src.manager.events.emitter import EventSinkType, create_event_emitter
from src.manager.events.metrics import generate_metrics_output
from src.manager.github.app import GitHubApp
from src.manager.pipeline import ManagerPipeline
from src.manager.runs.client import RunServiceClient
from src.manager.sessions.context import RequestContext
from src.manager.sessions.orchestrator import (
    InvalidResumeStateError,
    SessionOrchestrator,
    SessionStartError,
)
from src.manager.state.models import (
    ConversationState,
    Message,
    RequestSource,
    StateUpdate,
    TargetRepository,
    TrackerIssueIdConflictError,
    apply_update,
)
from src.manager.state.registry import SessionRegistry
from src.manager.state.repository import (
    ConversationRepository,
    DatabaseError,
    InMemoryConversationRepository,
    PostgresConversationRepository,
    VersionConflictError,
)
from src.manager.tracker.fields import IssueFieldsWriter
from src.manager.tracker.sync import TicketNotFoundError, TrackerSync, TrackerSyncError
from src.manager.webhook.handler import WebhookHandler, build_trigger_labels
from src.manager.webhook.ingress import IngressAdapter
from src.manager.webhook.models import WebhookHeaders

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# Global instances, initialized during lifespan startup
settings: Optional[ManagerSettings] = None
pipeline: Optional[ManagerPipeline] = None
ingress: Optional[IngressAdapter] = None
repository: Optional[ConversationRepository] = None
run_client: Optional[RunServiceClient] = None

_background_tasks: Set[asyncio.Task] = set()


def _redact_secret(value: Optional[str], visible_chars: int = 4) -> str:
    """Redact a secret value, showing only the first few characters."""
    if not value:
        return "<unset>"
    if len(value) <= visible_chars:
        return "*" * len(value)
    return value[:visible_chars] + "*" * (len(value) - visible_chars)


def _log_configuration(cfg: ManagerSettings) -> None:
    """Log configuration values with secrets redacted."""
    logger.info("Session manager configuration:")
    logger.info(f"  GitHub Base URL: {cfg.github_base_url}")
    logger.info(f"  GitHub App ID: {cfg.github_app_id}")
    logger.info(f"  GitHub App Private Key: {_redact_secret(cfg.github_app_private_key)}")
    logger.info(f"  GitHub Webhook Secret: {_redact_secret(cfg.github_webhook_secret)}")
    logger.info(f"  Run Service URL: {cfg.run_service_url}")
    logger.info(f"  Run Service API Key: {_redact_secret(cfg.run_service_api_key)}")
    logger.info(f"  Planner Graph: {cfg.planner_graph_id}")
    logger.info(f"  Recursion Limit: {cfg.recursion_limit}")
    logger.info(f"  LLM URL: {cfg.llm_url}")
    logger.info(f"  LLM API Key: {_redact_secret(cfg.llm_api_key)}")
    logger.info(f"  Router Model: {cfg.router_model}")
    logger.info(f"  Issue Fields Model: {cfg.fields_model}")
    logger.info(f"  Max Tier Model: {cfg.max_tier_model}")
    logger.info(f"  Allowed Users: {len(cfg.allowed_user_list)} configured")
    logger.info(f"  App URL: {cfg.app_url}")
    logger.info(f"  Branch Prefix: {cfg.branch_prefix}")
    logger.info(f"  Database URL: {_redact_secret(cfg.database_url)}")
    logger.info(f"  Host: {cfg.host}")
    logger.info(f"  Port: {cfg.port}")


def _build_components(cfg: ManagerSettings, repo: ConversationRepository):
    """Wire all dependencies into the pipeline and ingress adapter."""
    client = RunServiceClient(
        base_url=cfg.run_service_url,
        api_key=cfg.run_service_api_key,
    )
    github_app = GitHubApp(
        app_id=cfg.github_app_id,
        private_key=cfg.github_app_private_key,
        base_url=cfg.github_base_url,
    )
    fields_writer = IssueFieldsWriter(
        llm_url=cfg.llm_url,
        model_name=cfg.fields_model,
        api_key=cfg.llm_api_key,
        timeout=cfg.llm_timeout_seconds,
    )
    orchestrator = SessionOrchestrator(
        run_client=client,
        fields_writer=fields_writer,
        github_app=github_app,
        planner_graph_id=cfg.planner_graph_id,
        recursion_limit=cfg.recursion_limit,
        branch_prefix=cfg.branch_prefix,
        stream_mode=cfg.stream_mode,
    )
    event_emitter = create_event_emitter([EventSinkType.LOGGING, EventSinkType.METRICS])

    manager_pipeline = ManagerPipeline(
        tracker=TrackerSync(fields_writer=fields_writer),
        registry=SessionRegistry(run_client=client),
        classifier=RouteClassifier(
            llm_url=cfg.llm_url,
            model_name=cfg.router_model,
            api_key=cfg.llm_api_key,
            timeout=cfg.llm_timeout_seconds,
        ),
        orchestrator=orchestrator,
        github_app=github_app,
        event_emitter=event_emitter,
    )
    adapter = IngressAdapter(
        handler=WebhookHandler(secret=cfg.github_webhook_secret),
        github_app=github_app,
        orchestrator=orchestrator,
        repository=repo,
        trigger_labels=build_trigger_labels(
            cfg.label_standard,
            cfg.label_auto_accept,
            cfg.label_max,
            cfg.label_max_auto_accept,
        ),
        allowed_users=cfg.allowed_user_list,
        max_tier_model=cfg.max_tier_model,
        app_url=cfg.app_url,
        event_emitter=event_emitter,
    )
    return client, manager_pipeline, adapter


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Load configuration, wire dependencies, and release them on shutdown."""
    global settings, pipeline, ingress, repository, run_client

    logger.info("Session manager starting up...")

    settings = get_settings()
    logging.getLogger().setLevel(settings.log_level)
    _log_configuration(settings)

    if settings.database_url:
        postgres = PostgresConversationRepository(settings.database_url)
        await postgres.connect()
        repository = postgres
    else:
        logger.warning("No database configured, using in-memory conversation storage")
        repository = InMemoryConversationRepository()

    run_client, pipeline, ingress = _build_components(settings, repository)

    logger.info("Session manager started successfully")

    yield

    logger.info("Session manager shutting down...")

    if run_client is not None:
        await run_client.close()
    if isinstance(repository, PostgresConversationRepository):
        await repository.disconnect()

    logger.info("Session manager shutdown complete")


app = FastAPI(
    title="Issue Session Manager",
    description="Routes requests to planning and programming sessions tracked in GitHub issues",
    version="1.0.0",
    lifespan=lifespan,
)


class MessageRequest(BaseModel):
    """Body of a direct user message."""

    content: str = Field(..., min_length=1)
    target_repository: Optional[TargetRepository] = Field(
        default=None,
        description="Required when the thread does not exist yet",
    )
    auto_accept_plan: bool = False


class MessageResponse(BaseModel):
    thread_id: str
    route: str
    response: str
    tracker_issue_id: Optional[int] = None
    planner_thread_id: Optional[str] = None
    planner_run_id: Optional[str] = None
    forked_thread_id: Optional[str] = None


ERROR_STATUS = (
    (NoUserMessageError, 400),
    (TicketNotFoundError, 404),
    (InvalidResumeStateError, 409),
    (VersionConflictError, 409),
    (TrackerIssueIdConflictError, 409),
    (ClassificationFailedError, 502),
    (TrackerSyncError, 502),
    (SessionStartError, 502),
    (DatabaseError, 503),
)


def _error_response(error: Exception) -> JSONResponse:
    for error_type, status_code in ERROR_STATUS:
        if isinstance(error, error_type):
            message = getattr(error, "message", str(error))
            return JSONResponse(
                status_code=status_code,
                content={"error": type(error).__name__, "message": message},
            )
    raise error


@app.get("/health")
async def health():
    """Liveness probe endpoint."""
    return {"status": "healthy"}


@app.get("/metrics", response_class=PlainTextResponse)
async def metrics():
    """Prometheus metrics endpoint."""
    return PlainTextResponse(generate_metrics_output().decode("utf-8"))


@app.get("/threads/{thread_id}")
async def get_thread(thread_id: str):
    if repository is None:
        raise HTTPException(status_code=503, detail="Service not initialized")
    state = await repository.get(thread_id)
    if state is None:
        raise HTTPException(status_code=404, detail=f"Thread {thread_id} not found")
    return state.model_dump(mode="json")


@app.post("/threads/{thread_id}/messages", response_model=MessageResponse)
async def post_message(thread_id: str, body: MessageRequest, request: Request):
    """Append a user message to a conversation and run the pipeline.

    The message is stored before the pipeline runs, so a failed pass
    leaves it in the conversation for the next attempt.
    """
    if repository is None or pipeline is None:
        raise HTTPException(status_code=503, detail="Service not initialized")

    context = RequestContext.from_headers(request.headers)
    message = Message.human(body.content, request_source=RequestSource.DIRECT_USER)

    try:
        state = await repository.get(thread_id)
        if state is None:
            if body.target_repository is None:
                raise HTTPException(
                    status_code=400,
                    detail="target_repository is required for a new thread",
                )
            state = ConversationState(
                thread_id=thread_id,
                messages=[message],
                target_repository=body.target_repository,
                auto_accept_plan=body.auto_accept_plan,
            )
        else:
            state = apply_update(state, StateUpdate(messages=[message]))
            state = state.model_copy(update={"version": state.version + 1})
        await repository.save(state)

        result = await pipeline.process_message(state, context)
        final = result.state.model_copy(update={"version": state.version + 1})
        await repository.save(final)
        if result.fork is not None:
            await repository.save(result.fork.conversation)
    except HTTPException:
        raise
    except Exception as e:
        return _error_response(e)

    planner = final.planner_session
    return MessageResponse(
        thread_id=final.thread_id,
        route=result.route.value,
        response=result.decision.response,
        tracker_issue_id=final.tracker_issue_id,
        planner_thread_id=planner.thread_id if planner else None,
        planner_run_id=planner.run_id if planner else None,
        forked_thread_id=result.fork.thread_id if result.fork else None,
    )


@app.post("/webhooks/github")
async def github_webhook(request: Request):
    """GitHub webhook receiver endpoint.

    All four delivery headers must be present and the body must be JSON,
    otherwise the request is rejected with 400 before any processing.
    The event itself is handled in the background.
    """
    raw = await request.body()
    try:
        payload = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        logger.error("Failed to parse webhook payload", extra={"error": str(e)})
        return JSONResponse(status_code=400, content={"error": "Missing payload"})

    headers = WebhookHeaders.from_mapping(request.headers)
    if headers is None:
        logger.error(
            "Missing required webhook headers",
            extra={"missing": WebhookHeaders.missing(request.headers)},
        )
        return JSONResponse(status_code=400, content={"error": "Missing webhook headers"})

    if ingress is None:
        logger.error("Ingress not initialized")
        raise HTTPException(status_code=503, detail="Service not initialized")

    task = asyncio.create_task(ingress.handle(headers, payload))
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)

    return {"received": True, "delivery_id": headers.delivery_id}


if __name__ == "__main__":
    import uvicorn

    dev_settings = get_settings()
    uvicorn.run(
        "src.manager.main:app",
        host=dev_settings.host,
        port=dev_settings.port,
        reload=True,
    )
