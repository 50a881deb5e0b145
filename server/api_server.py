"""FastAPI application entry point for the nexus search bridge."""

import os
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from shared.logging.logging_setup import setup_logging
from shared.helper.HelperConfig import HelperConfig
from shared.clients.llm.LLMClientInterface import LLMClientInterface
from shared.clients.repo.RepoClientInterface import RepoClientInterface
from shared.clients.llm.LLMClientManager import LLMClientManager
from shared.clients.repo.RepoClientManager import RepoClientManager
from shared.models.errors import LLMRequestError, QuotaExceededError, RepositoryError
from services.answer.AnswerService import AnswerService
from services.ingest.IngestService import IngestService
from services.retrieval.RetrievalService import RetrievalService
from services.usage_gate.UsageGate import UsageGate
from server.adapters.SSEAdapter import SSEAdapter
from server.adapters.WebSocketAdapter import WebSocketAdapter
from server.routers.DocumentRouter import router as document_router
from server.routers.QueryRouter import router as query_router
from server.routers.QueryRouter import ws_router
from server.routers.SystemRouter import router as system_router

logging = setup_logging()
app_version = os.getenv("APP_VERSION", "unknown")


def wire_services(
    app: FastAPI,
    helper_config: HelperConfig,
    repo_client: RepoClientInterface,
    llm_client: LLMClientInterface,
) -> None:
    """Build the service graph on top of booted clients and publish it on app.state."""
    app.state.helper_config = helper_config
    app.state.repo_client = repo_client
    app.state.llm_client = llm_client

    app.state.usage_gate = UsageGate(helper_config=helper_config, repo_client=repo_client)
    app.state.retrieval_service = RetrievalService(
        helper_config=helper_config,
        repo_client=repo_client,
        llm_client=llm_client,
    )
    app.state.answer_service = AnswerService(
        helper_config=helper_config,
        usage_gate=app.state.usage_gate,
        retrieval_service=app.state.retrieval_service,
        llm_client=llm_client,
    )
    app.state.ingest_service = IngestService(
        helper_config=helper_config,
        usage_gate=app.state.usage_gate,
        repo_client=repo_client,
        llm_client=llm_client,
    )
    app.state.sse_adapter = SSEAdapter(helper_config=helper_config, answer_service=app.state.answer_service)
    app.state.websocket_adapter = WebSocketAdapter(helper_config=helper_config, answer_service=app.state.answer_service)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    # when the app starts
    app.state.logging = logging
    helper_config = HelperConfig(logger=logging)

    repo_client = RepoClientManager(helper_config=helper_config).get_client()
    llm_client = LLMClientManager(helper_config=helper_config).get_client()

    logging.info("Booting all clients...")
    for client in [repo_client, llm_client]:
        await client.boot()
    logging.info("All clients booted successfully.")

    wire_services(app, helper_config, repo_client, llm_client)
    await check_connections(repo_client, llm_client)

    # while the app is running...
    yield

    # when the app shuts down, close all client connections
    logging.info("Shutting down — closing all clients...")
    for client in [repo_client, llm_client]:
        await client.close()
    logging.info("All clients closed.")


app = FastAPI(
    title="nexus_search_bridge",
    description=(
        "Indexes screenshots and text snippets per user, tags each with one normalized "
        "category and answers questions about them. Answers are served in one piece via "
        "POST /api/search, streamed via POST /api/search-stream (SSE) or over the /ws WebSocket."
    ),
    version=app_version,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(query_router)
app.include_router(ws_router)
app.include_router(document_router)
app.include_router(system_router)


##########################################
########### EXCEPTION HANDLERS ###########
##########################################

@app.exception_handler(StarletteHTTPException)
async def handle_http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"error": str(exc.detail)}, headers=getattr(exc, "headers", None))


@app.exception_handler(RequestValidationError)
async def handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    message = "Invalid request"
    if errors:
        first = errors[0]
        ctx_error = (first.get("ctx") or {}).get("error")
        message = str(ctx_error) if ctx_error else str(first.get("msg") or message)
    return JSONResponse(status_code=400, content={"error": message})


@app.exception_handler(QuotaExceededError)
async def handle_quota_exceeded(request: Request, exc: QuotaExceededError) -> JSONResponse:
    return JSONResponse(status_code=402, content=exc.to_payload())


@app.exception_handler(LLMRequestError)
async def handle_llm_error(request: Request, exc: LLMRequestError) -> JSONResponse:
    logging.error("AI service request failed on %s: %s", request.url.path, exc)
    return JSONResponse(status_code=502, content={"error": str(exc)})


@app.exception_handler(RepositoryError)
async def handle_repository_error(request: Request, exc: RepositoryError) -> JSONResponse:
    logging.error("Repository failure on %s: %s", request.url.path, exc)
    return JSONResponse(status_code=503, content={"error": str(exc)})


async def check_connections(repo_client: RepoClientInterface, llm_client: LLMClientInterface) -> None:
    """Check connectivity to the configured backends on startup.

    An unreachable AI service is non-fatal (queries fail later, the document
    API keeps working). An unreachable repository is fatal.

    Raises:
        Exception: If the repository is not reachable.
    """
    if not await repo_client.do_healthcheck():
        raise Exception(f"Repository '{repo_client.get_engine_name()}' is not reachable. Cannot serve requests.")

    if not await llm_client.do_healthcheck():
        logging.warning(
            "LLM client '%s' is not reachable. Embedding and chat will fail until it is.",
            llm_client.get_engine_name(),
        )


if __name__ == "__main__":
    import uvicorn

    port = int(os.getenv("PORT", "8000"))
    ws_ping_interval = float(os.getenv("WS_PING_INTERVAL_SECONDS", "30"))
    logging.info(
        "Starting nexus_search_bridge API Server v%s from root dir: %s on port %d...",
        app_version,
        os.environ.get("ROOT_DIR", "unknown"),
        port,
    )
    uvicorn.run(app, host="0.0.0.0", port=port, ws_ping_interval=ws_ping_interval)
