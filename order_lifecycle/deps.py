from fastapi import Request

from order_lifecycle.services import LifecycleServices


def get_services(request: Request) -> LifecycleServices:
    return request.app.state.services
