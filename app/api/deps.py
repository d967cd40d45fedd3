from fastapi import Request

from app.services.relay import RelayCore


def get_relay(request: Request) -> RelayCore:
    return request.app.state.relay
