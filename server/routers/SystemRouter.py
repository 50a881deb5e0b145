from fastapi import APIRouter, Depends, Request

from server.dependencies.auth import get_user_id, verify_api_key
from server.models.responses import BackendHealth, HealthResponse
from shared.models.quota import UsageSummary

router = APIRouter(prefix="/api", tags=["system"])


@router.get("/usage")
async def get_usage(
    request: Request,
    user_id: str = Depends(get_user_id),
    _: None = Depends(verify_api_key),
) -> UsageSummary:
    """Effective plan of the user with message and upload allowances."""
    usage_gate = request.app.state.usage_gate
    return await usage_gate.get_summary(user_id)


@router.get("/health")
async def health(request: Request) -> HealthResponse:
    """Report whether the repository and the AI service are reachable."""
    repo_client = request.app.state.repo_client
    llm_client = request.app.state.llm_client
    repo_ok = await repo_client.do_healthcheck()
    llm_ok = await llm_client.do_healthcheck()
    return HealthResponse(
        ok=repo_ok and llm_ok,
        version=request.app.version,
        repo=BackendHealth(engine=repo_client.get_engine_name(), ok=repo_ok),
        llm=BackendHealth(engine=llm_client.get_engine_name(), ok=llm_ok),
    )
