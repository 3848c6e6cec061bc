from fastapi import Depends, Request

from .container import ApplicationContainer


def get_container(request: Request) -> ApplicationContainer:
    container = getattr(request.app.state, "container", None)
    if not container:
        raise RuntimeError("Application container not initialised.")
    return container


def get_settings(container: ApplicationContainer = Depends(get_container)):
    return container.settings


def get_persistence_gateway(container: ApplicationContainer = Depends(get_container)):
    return container.persistence


def get_event_verifier(container: ApplicationContainer = Depends(get_container)):
    return container.event_verifier


def get_event_classifier(container: ApplicationContainer = Depends(get_container)):
    return container.event_classifier


def get_reconciler(container: ApplicationContainer = Depends(get_container)):
    return container.reconciler


def get_notifier(container: ApplicationContainer = Depends(get_container)):
    return container.notifier


def get_subscription_query_service(container: ApplicationContainer = Depends(get_container)):
    return container.subscription_query_service
