from fare_tracker.services.errors import ProviderError, TransientProviderError, CircuitOpenError, ProviderAuthError
from fare_tracker.services.price_provider import PriceProvider, PriceQuote, AmadeusPriceProvider
from fare_tracker.services.polling import PricePollingService, CycleOutcome, CycleResult
from fare_tracker.services.tracking import TrackingService

__all__ = [
    "ProviderError",
    "TransientProviderError",
    "CircuitOpenError",
    "ProviderAuthError",
    "PriceProvider",
    "PriceQuote",
    "AmadeusPriceProvider",
    "PricePollingService",
    "CycleOutcome",
    "CycleResult",
    "TrackingService",
]
