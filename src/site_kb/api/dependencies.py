from fastapi import Request

from ..container import ServiceContainer
from ..jobs import IndexingJobCoordinator
from ..retrieval import RetrievalService


def get_services(request: Request) -> ServiceContainer:
    return request.app.state.services


def get_coordinator(request: Request) -> IndexingJobCoordinator:
    return get_services(request).coordinator


def get_retrieval_service(request: Request) -> RetrievalService:
    return get_services(request).retrieval
