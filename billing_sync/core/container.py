from dataclasses import dataclass

from ..application.services.subscription_query_service import SubscriptionQueryService
from .config import Settings
from ..domain.ports.persistence import PersistenceGateway
from ..services.event_classifier import EventClassifier
from ..services.event_verifier import EventVerifier
from ..services.reconciler import Reconciler
from ..services.stripe_service import StripeService
from ..services.subscription_notifier import SubscriptionNotifier


@dataclass(slots=True)
class ApplicationContainer:
    """Dependency registry shared across the FastAPI application lifecycle."""

    settings: Settings
    persistence: PersistenceGateway
    stripe_service: StripeService
    event_verifier: EventVerifier
    event_classifier: EventClassifier
    notifier: SubscriptionNotifier
    reconciler: Reconciler
    subscription_query_service: SubscriptionQueryService
