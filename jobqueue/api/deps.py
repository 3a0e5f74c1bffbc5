"""
Request dependencies.
"""

from typing import Annotated

from fastapi import Depends, Request

from jobqueue.engine import QueueEngine


def get_engine(request: Request) -> QueueEngine:
    """The engine the application was created for."""
    return request.app.state.engine


Engine = Annotated[QueueEngine, Depends(get_engine)]
