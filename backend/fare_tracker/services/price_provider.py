import asyncio
import httpx
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, asdict
from datetime import date, datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Awaitable, Callable, List, Optional

from fare_tracker.config import Settings, get_settings
from fare_tracker.services.errors import ProviderAuthError, TransientProviderError
from fare_tracker.services.resilience import CircuitBreaker, ResilientCaller, RetryPolicy
from fare_tracker.services.ttl_cache import TTLCache
from fare_tracker.utils import utcnow

logger = logging.getLogger(__name__)

TOKEN_PATH = "/v1/security/oauth2/token"
FLIGHT_OFFERS_PATH = "/v2/shopping/flight-offers"


@dataclass
class FlightSegment:
    departure_airport: str
    arrival_airport: str
    departure_time: datetime
    arrival_time: datetime
    duration_minutes: int
    carrier_code: str = ""
    flight_number: str = ""
    layover_minutes: Optional[int] = None  # time until the next segment departs


@dataclass
class OfferDetails:
    """Itinerary of the winning offer. Display only, never used in alert math."""
    departure_date: date
    departure_time: datetime
    arrival_time: datetime
    total_duration_minutes: int
    segments: List[FlightSegment] = field(default_factory=list)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["departure_date"] = self.departure_date.isoformat()
        data["departure_time"] = self.departure_time.isoformat()
        data["arrival_time"] = self.arrival_time.isoformat()
        for segment in data["segments"]:
            segment["departure_time"] = segment["departure_time"].isoformat()
            segment["arrival_time"] = segment["arrival_time"].isoformat()
        return data


@dataclass
class PriceQuote:
    """Best price for a route across its date window."""
    price: Decimal
    currency: str
    retrieved_at: datetime
    carrier_code: Optional[str] = None
    stops: int = 0
    offer_details: Optional[OfferDetails] = None


@dataclass
class FlightSearchResult:
    flight_number: str
    airline_code: str
    origin: str
    destination: str
    departure_date: date
    departure_time: datetime
    arrival_time: datetime
    price: Decimal
    currency: str
    stops: int
    duration_minutes: int


class PriceProvider(ABC):
    """Logical contract of a flight price source."""
    name: str = "base"

    @abstractmethod
    async def quote_route(
        self,
        origin: str,
        destination: str,
        target_date: date,
        flexibility_days: int,
        max_stops: Optional[int],
    ) -> Optional[PriceQuote]:
        """
        Cheapest offer within target_date +/- flexibility_days that has at most
        max_stops connections (None = any), or None if nothing matches.

        Raises ProviderError when the provider could not be reached.
        """

    def status(self) -> dict:
        return {"provider": self.name}

    async def aclose(self) -> None:
        pass


def _offer_segments(offer: dict) -> list:
    itineraries = offer.get("itineraries") or [{}]
    return itineraries[0].get("segments") or []


def _offer_stops(offer: dict) -> int:
    return max(len(_offer_segments(offer)) - 1, 0)


def _offer_price(offer: dict) -> Optional[Decimal]:
    try:
        return Decimal(str(offer["price"]["grandTotal"]))
    except (KeyError, TypeError, InvalidOperation):
        return None


def _offer_carrier(offer: dict) -> Optional[str]:
    codes = offer.get("validatingAirlineCodes") or []
    if codes:
        return codes[0]
    segments = _offer_segments(offer)
    return segments[0].get("carrierCode") if segments else None


def _minutes(delta: timedelta) -> int:
    return int(delta.total_seconds() // 60)


def parse_offer_details(offer: dict) -> Optional[OfferDetails]:
    """Build OfferDetails from the first itinerary, or None if it is malformed."""
    raw_segments = _offer_segments(offer)
    if not raw_segments:
        return None

    try:
        segments = []
        for raw in raw_segments:
            departure = datetime.fromisoformat(raw["departure"]["at"])
            arrival = datetime.fromisoformat(raw["arrival"]["at"])
            segments.append(FlightSegment(
                departure_airport=raw["departure"].get("iataCode", ""),
                arrival_airport=raw["arrival"].get("iataCode", ""),
                departure_time=departure,
                arrival_time=arrival,
                duration_minutes=_minutes(arrival - departure),
                carrier_code=raw.get("carrierCode") or "",
                flight_number=f"{raw.get('carrierCode') or ''}{raw.get('number') or ''}",
            ))
    except (KeyError, TypeError, ValueError) as e:
        logger.debug(f"Could not parse offer itinerary: {e}")
        return None

    for current, following in zip(segments, segments[1:]):
        current.layover_minutes = _minutes(following.departure_time - current.arrival_time)

    return OfferDetails(
        departure_date=segments[0].departure_time.date(),
        departure_time=segments[0].departure_time,
        arrival_time=segments[-1].arrival_time,
        total_duration_minutes=_minutes(segments[-1].arrival_time - segments[0].departure_time),
        segments=segments,
    )


class AmadeusPriceProvider(PriceProvider):
    """
    Amadeus flight-offers client.

    Every HTTP request (token or search) goes through a ResilientCaller, so
    retry/breaker/timeout apply per day searched, not per quote_route call.
    The access token is cached until `token_safety_margin_seconds` before it
    expires, and successful quotes are cached for `response_cache_ttl_seconds`
    keyed by route + window + stops filter.
    """
    name = "amadeus"

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        base_url: str = "https://api.amadeus.com",
        retry_count: int = 3,
        backoff_base_seconds: float = 2.0,
        circuit_failure_threshold: int = 5,
        circuit_cooldown_seconds: float = 30.0,
        request_timeout_seconds: float = 30.0,
        response_cache_ttl_seconds: float = 300.0,
        response_cache_max_entries: int = 512,
        token_safety_margin_seconds: int = 60,
        max_offers_per_day: int = 10,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        now: Callable[[], datetime] = utcnow,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.base_url = base_url
        self.request_timeout_seconds = request_timeout_seconds
        self.token_safety_margin_seconds = token_safety_margin_seconds
        self.max_offers_per_day = max_offers_per_day
        self._transport = transport
        self._clock = clock
        self._now = now

        self.breaker = CircuitBreaker(
            name="Amadeus API",
            failure_threshold=circuit_failure_threshold,
            cooldown_seconds=circuit_cooldown_seconds,
            clock=clock,
        )
        self._caller = ResilientCaller(
            name="Amadeus API",
            retry=RetryPolicy(
                max_retries=retry_count,
                backoff_base_seconds=backoff_base_seconds,
                sleep=sleep,
            ),
            breaker=self.breaker,
            timeout_seconds=request_timeout_seconds,
        )
        self._quote_cache: TTLCache[PriceQuote] = TTLCache(
            capacity=response_cache_max_entries,
            default_ttl=response_cache_ttl_seconds,
            clock=clock,
        )

        self._client: Optional[httpx.AsyncClient] = None
        self._token: Optional[str] = None
        self._token_expires_at: float = 0.0
        self._token_lock = asyncio.Lock()

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None, **overrides) -> "AmadeusPriceProvider":
        settings = settings or get_settings()
        kwargs = dict(
            client_id=settings.amadeus_client_id,
            client_secret=settings.amadeus_client_secret,
            base_url=settings.amadeus_base_url,
            retry_count=settings.provider_retry_count,
            backoff_base_seconds=settings.provider_backoff_base_seconds,
            circuit_failure_threshold=settings.circuit_failure_threshold,
            circuit_cooldown_seconds=settings.circuit_cooldown_seconds,
            request_timeout_seconds=settings.request_timeout_seconds,
            response_cache_ttl_seconds=settings.response_cache_ttl_seconds,
            response_cache_max_entries=settings.response_cache_max_entries,
            token_safety_margin_seconds=settings.token_safety_margin_seconds,
        )
        kwargs.update(overrides)
        return cls(**kwargs)

    def is_available(self) -> bool:
        return bool(self.client_id and self.client_secret)

    def status(self) -> dict:
        return {
            "provider": self.name,
            "available": self.is_available(),
            "circuit": self.breaker.snapshot(),
            "token_cached": self._token_valid(),
            "cached_quotes": len(self._quote_cache),
        }

    async def aclose(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.request_timeout_seconds,
                transport=self._transport,
            )
        return self._client

    async def _send(self, method: str, url: str, **kwargs) -> httpx.Response:
        """Single HTTP request; transport errors and 5xx/408 become TransientProviderError."""
        client = self._get_client()
        try:
            response = await client.request(method, url, **kwargs)
        except httpx.TransportError as e:
            raise TransientProviderError(f"{method} {url}: {type(e).__name__}: {e}") from e

        if response.status_code >= 500 or response.status_code == 408:
            raise TransientProviderError(
                f"{method} {url}: HTTP {response.status_code}",
                status_code=response.status_code,
            )
        return response

    def _token_valid(self) -> bool:
        return bool(self._token) and self._clock() < self._token_expires_at

    def _invalidate_token(self) -> None:
        self._token = None
        self._token_expires_at = 0.0

    async def _get_token(self) -> str:
        if self._token_valid():
            return self._token

        async with self._token_lock:
            # Another cycle may have refreshed it while we waited
            if self._token_valid():
                return self._token

            if not self.is_available():
                raise ProviderAuthError("Amadeus API credentials not configured")

            logger.debug("Requesting new Amadeus access token")
            response = await self._caller.call(lambda: self._send(
                "POST",
                TOKEN_PATH,
                data={
                    "grant_type": "client_credentials",
                    "client_id": self.client_id,
                    "client_secret": self.client_secret,
                },
            ))
            if not response.is_success:
                raise ProviderAuthError(f"Amadeus auth failed: HTTP {response.status_code}")

            data = response.json()
            token = data.get("access_token")
            if not token:
                raise ProviderAuthError("Amadeus auth response did not include an access token")

            expires_in = int(data.get("expires_in", 1799))
            self._token = token
            self._token_expires_at = self._clock() + max(expires_in - self.token_safety_margin_seconds, 0)
            logger.info(f"Obtained Amadeus access token, expires in {expires_in}s")
            return token

    async def _fetch_offers(self, origin: str, destination: str, day: date) -> Optional[list]:
        """Offers for one departure day, or None if the provider refused this request."""
        token = await self._get_token()
        params = {
            "originLocationCode": origin,
            "destinationLocationCode": destination,
            "departureDate": day.isoformat(),
            "adults": 1,
            "max": self.max_offers_per_day,
        }
        response = await self._caller.call(lambda: self._send(
            "GET",
            FLIGHT_OFFERS_PATH,
            params=params,
            headers={"Authorization": f"Bearer {token}"},
        ))

        if response.status_code == 401:
            logger.warning(f"Amadeus rejected access token for {origin}-{destination} on {day}, refreshing")
            self._invalidate_token()
            return None
        if not response.is_success:
            logger.warning(f"Amadeus API request failed for {origin}-{destination} on {day}: HTTP {response.status_code}")
            return None

        return response.json().get("data") or []

    @staticmethod
    def _cache_key(origin, destination, target_date, flexibility_days, max_stops) -> tuple:
        return (origin, destination, target_date.isoformat(), flexibility_days,
                "any" if max_stops is None else max_stops)

    async def quote_route(
        self,
        origin: str,
        destination: str,
        target_date: date,
        flexibility_days: int,
        max_stops: Optional[int],
    ) -> Optional[PriceQuote]:
        stops_label = "any" if max_stops is None else max_stops
        cache_key = self._cache_key(origin, destination, target_date, flexibility_days, max_stops)

        cached = self._quote_cache.get(cache_key)
        if cached is not None:
            logger.debug(f"Returning cached route price for {origin} → {destination} on {target_date} ±{flexibility_days} days")
            return cached

        logger.info(
            f"Searching route prices: {origin} → {destination} on {target_date} "
            f"±{flexibility_days} days, max {stops_label} stops"
        )

        cheapest: Optional[PriceQuote] = None
        start = target_date - timedelta(days=flexibility_days)

        for offset in range(2 * flexibility_days + 1):
            day = start + timedelta(days=offset)
            offers = await self._fetch_offers(origin, destination, day)
            if not offers:
                continue
            retrieved_at = self._now()

            for offer in offers:
                price = _offer_price(offer)
                if price is None:
                    continue
                stops = _offer_stops(offer)
                if max_stops is not None and stops > max_stops:
                    continue
                # Strict < keeps the first-seen offer on ties
                if cheapest is None or price < cheapest.price:
                    cheapest = PriceQuote(
                        price=price,
                        currency=offer.get("price", {}).get("currency", "USD"),
                        retrieved_at=retrieved_at,
                        carrier_code=_offer_carrier(offer),
                        stops=stops,
                        offer_details=parse_offer_details(offer),
                    )
                    logger.debug(f"Found cheaper option on {day}: {price} {cheapest.currency} ({stops} stops)")

        if cheapest is None:
            logger.warning(
                f"No flights found for route {origin} → {destination} on {target_date} "
                f"±{flexibility_days} days with max {stops_label} stops"
            )
            return None

        self._quote_cache.set(cache_key, cheapest)
        logger.info(
            f"Found cheapest route price: {origin} → {destination} = "
            f"{cheapest.price} {cheapest.currency} ({cheapest.stops} stops)"
        )
        return cheapest

    async def search_flights(
        self,
        origin: str,
        destination: str,
        start_date: date,
        end_date: date,
    ) -> List[FlightSearchResult]:
        """All offers departing between start_date and end_date (inclusive)."""
        results: List[FlightSearchResult] = []
        day = start_date
        while day <= end_date:
            for offer in await self._fetch_offers(origin, destination, day) or []:
                price = _offer_price(offer)
                details = parse_offer_details(offer)
                if price is None or details is None:
                    continue
                first = details.segments[0]
                results.append(FlightSearchResult(
                    flight_number=first.flight_number,
                    airline_code=_offer_carrier(offer) or first.carrier_code,
                    origin=origin,
                    destination=destination,
                    departure_date=details.departure_date,
                    departure_time=details.departure_time,
                    arrival_time=details.arrival_time,
                    price=price,
                    currency=offer.get("price", {}).get("currency", "USD"),
                    stops=_offer_stops(offer),
                    duration_minutes=details.total_duration_minutes,
                ))
            day += timedelta(days=1)

        logger.info(
            f"Flight search completed: {origin} -> {destination}, {start_date} to {end_date}, "
            f"found {len(results)} flights"
        )
        return results
