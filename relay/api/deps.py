from typing import Annotated

from fastapi import Depends, Request

from relay.auth.handshake import HandshakeBridge
from relay.auth.tokens import CredentialManager
from relay.services.queue import JobQueue


def get_queue(request: Request) -> JobQueue:
    return request.app.state.queue


def get_credentials(request: Request) -> CredentialManager:
    return request.app.state.credentials


def get_handshake(request: Request) -> HandshakeBridge:
    return request.app.state.handshake


# Engine handles live on app.state; the store is the only thing they share
QueueDep = Annotated[JobQueue, Depends(get_queue)]
CredentialsDep = Annotated[CredentialManager, Depends(get_credentials)]
HandshakeDep = Annotated[HandshakeBridge, Depends(get_handshake)]
