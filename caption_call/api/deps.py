from fastapi import Request, WebSocket

from caption_call.services.session import CallSessionRuntime


def get_runtime(request: Request) -> CallSessionRuntime:
    """
    Dependency for the process-wide session runtime.
    """
    return request.app.state.runtime


def get_ws_runtime(websocket: WebSocket) -> CallSessionRuntime:
    return websocket.app.state.runtime
