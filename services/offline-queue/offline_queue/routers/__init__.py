from fastapi import Request

from offline_queue.coordinator import SyncCoordinator
from offline_queue.manager import OfflineQueueManager


def get_coordinator(request: Request) -> SyncCoordinator:
    return request.app.state.coordinator


def get_manager(request: Request) -> OfflineQueueManager:
    return request.app.state.coordinator.manager
