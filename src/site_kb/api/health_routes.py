from fastapi import APIRouter, Request

router = APIRouter(tags=["health"])


@router.get("/health")
def health(request: Request):
    services = request.app.state.services
    return {
        "status": "ok",
        "vector_backend": services.settings.vector_backend,
        "embedding_model": services.embeddings.model,
        "workers": services.pool.size,
        "queued_jobs": services.pool.queue_size(),
    }
