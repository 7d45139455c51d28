from starlette.requests import Request

from research_tracker.services.lifecycle import JobLifecycle
from research_tracker.services.repository import JobStore
from research_tracker.services.submitter import TaskSubmitter


def get_repository(request: Request) -> JobStore:
    return request.app.state.repository


def get_submitter(request: Request) -> TaskSubmitter:
    return request.app.state.submitter


def get_lifecycle(request: Request) -> JobLifecycle:
    return request.app.state.lifecycle
