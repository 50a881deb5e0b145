from fastapi import APIRouter, Depends, HTTPException, Query, Request

from server.dependencies.auth import get_user_id, verify_api_key
from server.models.requests import CategoryRenameRequest, IngestRequest
from server.models.responses import (
    CategoryDeleteResponse,
    CategoryListResponse,
    CategoryRenameResponse,
    DeleteResponse,
    DocumentListResponse,
    DocumentResponse,
)
from shared.helper.category_helper import canonicalize_category
from shared.models.document import CategoryDeleteMode

router = APIRouter(prefix="/api", tags=["documents"])


##########################################
############### DOCUMENTS ################
##########################################

@router.get("/docs")
async def list_documents(
    request: Request,
    user_id: str = Depends(get_user_id),
    _: None = Depends(verify_api_key),
) -> DocumentListResponse:
    """List the user's documents, newest first."""
    repo_client = request.app.state.repo_client
    documents = await repo_client.do_list_documents(user_id)
    return DocumentListResponse(docs=[doc.to_public() for doc in documents])


@router.post("/docs")
async def ingest_document(
    request: Request,
    body: IngestRequest,
    user_id: str = Depends(get_user_id),
    _: None = Depends(verify_api_key),
) -> DocumentResponse:
    """Index a text document.

    Args:
        request (Request): FastAPI request (provides app.state.ingest_service).
        body (IngestRequest): Text plus optional caption, name and category candidates.
        user_id (str): Requesting user from the X-Nexus-User-Id header.
        _ (None): Auth dependency result (unused).

    Returns:
        DocumentResponse: The stored document.
    """
    ingest_service = request.app.state.ingest_service
    document = await ingest_service.do_ingest_text(
        owner_id=user_id,
        text=body.text,
        caption=body.caption,
        original_name=body.original_name,
        existing_categories=body.existing_categories,
        new_categories=body.new_categories,
        created_at=body.created_at,
    )
    return DocumentResponse(doc=document.to_public())


@router.delete("/docs/{document_id}")
async def delete_document(
    request: Request,
    document_id: str,
    user_id: str = Depends(get_user_id),
    _: None = Depends(verify_api_key),
) -> DeleteResponse:
    repo_client = request.app.state.repo_client
    if not await repo_client.do_delete_document(user_id, document_id):
        raise HTTPException(status_code=404, detail="not found")
    return DeleteResponse()


##########################################
############### CATEGORIES ###############
##########################################

@router.get("/categories")
async def list_categories(
    request: Request,
    user_id: str = Depends(get_user_id),
    _: None = Depends(verify_api_key),
) -> CategoryListResponse:
    """List the user's canonical categories with document counts."""
    repo_client = request.app.state.repo_client
    return CategoryListResponse(categories=await repo_client.do_list_categories(user_id))


@router.patch("/categories/{name}")
async def rename_category(
    request: Request,
    name: str,
    body: CategoryRenameRequest,
    user_id: str = Depends(get_user_id),
    _: None = Depends(verify_api_key),
) -> CategoryRenameResponse:
    """Rename a category; an existing target absorbs the source."""
    from_name = canonicalize_category(name)
    to_name = canonicalize_category(body.to)
    if not from_name:
        raise HTTPException(status_code=400, detail="name is required")
    if not to_name:
        raise HTTPException(status_code=400, detail="to is required")
    if from_name == to_name:
        return CategoryRenameResponse(changed=0)

    repo_client = request.app.state.repo_client
    result = await repo_client.do_rename_category(user_id, name, body.to)
    request.app.state.helper_config.get_logger().info("Renamed category '%s' to '%s' for %s (%d document(s)).", from_name, to_name, user_id, result.changed)
    return CategoryRenameResponse(changed=result.changed)


@router.delete("/categories/{name}")
async def delete_category(
    request: Request,
    name: str,
    mode: str = Query(default=CategoryDeleteMode.UNLINK.value),
    user_id: str = Depends(get_user_id),
    _: None = Depends(verify_api_key),
) -> CategoryDeleteResponse:
    """Delete a category.

    mode: unlink (default) keeps the documents, purge deletes them,
    unlink-delete-orphans deletes only documents left without a category.
    """
    if not canonicalize_category(name):
        raise HTTPException(status_code=400, detail="name is required")
    try:
        delete_mode = CategoryDeleteMode(mode.strip().lower())
    except ValueError:
        raise HTTPException(status_code=400, detail="invalid mode")

    repo_client = request.app.state.repo_client
    result = await repo_client.do_delete_category(user_id, name, delete_mode)
    remaining = len(await repo_client.do_list_documents(user_id))
    return CategoryDeleteResponse(
        removed_from=result.removed_from,
        deleted_docs=result.deleted_docs,
        remaining=remaining,
    )
