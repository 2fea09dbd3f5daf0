"""
Retrieval context for the model prompt.

Summarizes the current state of the marketplace (listings, categories,
ratings, recent activity and the priced service catalog) into one bounded
text block. The underlying reads are independent and run concurrently; a
failed read only removes the sections that depend on it.
"""

import asyncio
import logging
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Tuple

from directory_assistant.storage.models import (
    ActivityEvent,
    Category,
    Listing,
    Review,
    ServiceOffering,
)
from directory_assistant.storage.repository import MarketplaceRepository

from .intent import SERVICE_KEYWORDS, fold

logger = logging.getLogger(__name__)

MAX_CONTEXT_CHARS = 6000
MIN_REVIEWS_FOR_RANKING = 2
TOP_N = 5
ACTIVITY_WINDOW_DAYS = 7
PROFILE_VIEW_EVENT = "profile_view"
CATALOG_CATEGORIES = 5
CATALOG_ENTRIES_PER_CATEGORY = 3
UNKNOWN_PROVIDER = "Proveedor"

HEADER = (
    "DIRECTORIO DE PROVEEDORES DE EVENTOS\n"
    "===================================="
)

# section name -> reads it needs
SECTION_SOURCES: Dict[str, Tuple[str, ...]] = {
    "stats": ("listings",),
    "categories": ("categories",),
    "top_rated": ("reviews",),
    "most_active": ("activity",),
    "catalog": ("catalog", "listings"),
}


@dataclass(frozen=True)
class RatedProvider:
    provider_id: str
    name: str
    avg_rating: float
    review_count: int


@dataclass(frozen=True)
class CatalogEntry:
    """One priced service, annotated for the prompt and candidate selection."""
    provider_name: str
    category: str
    service: str
    price: str
    city: str
    rating: Optional[float]
    verified: bool

    def render(self) -> str:
        rating = f", {self.rating:.1f}⭐" if self.rating is not None else ""
        verified = ", verificado" if self.verified else ""
        return f"- {self.provider_name} ({self.city}{rating}{verified}): {self.service} - {self.price}"


@dataclass
class ContextBlock:
    """Serialized context plus what went into it."""
    text: str
    sections: List[str] = field(default_factory=list)
    omitted: List[str] = field(default_factory=list)
    catalog: List[CatalogEntry] = field(default_factory=list)

    def candidates_for(self, service_type: str, city: Optional[str] = None, limit: int = 3) -> List[str]:
        """Best-rated provider names offering ``service_type``, optionally in ``city``."""
        stems = SERVICE_KEYWORDS.get(service_type, ())
        matches = [
            entry for entry in self.catalog
            if any(stem in fold(f"{entry.category} {entry.service}") for stem in stems)
        ]
        if city:
            in_city = [entry for entry in matches if fold(city) in fold(entry.city)]
            matches = in_city or matches
        matches.sort(key=lambda entry: entry.rating or 0.0, reverse=True)
        names: List[str] = []
        for entry in matches:
            if entry.provider_name not in names:
                names.append(entry.provider_name)
        return names[:limit]


def format_price(offering: ServiceOffering) -> Optional[str]:
    """Human price for a service, in MXN."""
    if offering.price_min is not None and offering.price_max is not None:
        return f"${offering.price_min:,.0f} - ${offering.price_max:,.0f} MXN"
    if offering.price_min is not None:
        return f"desde ${offering.price_min:,.0f} MXN"
    if offering.price_range:
        return offering.price_range
    return None


def rank_top_rated(
    reviews: List[Review],
    names: Dict[str, str],
    min_reviews: int = MIN_REVIEWS_FOR_RANKING,
    limit: int = TOP_N
) -> List[RatedProvider]:
    """Providers by mean rating, once they have at least ``min_reviews`` reviews."""
    ratings: Dict[str, List[int]] = defaultdict(list)
    for review in reviews:
        ratings[review.provider_id].append(review.rating)
    ranked = [
        RatedProvider(
            provider_id=provider_id,
            name=names.get(provider_id, UNKNOWN_PROVIDER),
            avg_rating=sum(values) / len(values),
            review_count=len(values)
        )
        for provider_id, values in ratings.items()
        if len(values) >= min_reviews
    ]
    ranked.sort(key=lambda p: (-p.avg_rating, -p.review_count, p.name))
    return ranked[:limit]


def rank_most_active(
    events: List[ActivityEvent],
    event_type: str = PROFILE_VIEW_EVENT,
    limit: int = TOP_N
) -> List[Tuple[str, int]]:
    """(provider_id, count) of ``event_type`` events, most frequent first."""
    counts = Counter(event.provider_id for event in events if event.event_type == event_type)
    return sorted(counts.items(), key=lambda item: (-item[1], item[0]))[:limit]


def mean_ratings(reviews: List[Review]) -> Dict[str, float]:
    ratings: Dict[str, List[int]] = defaultdict(list)
    for review in reviews:
        ratings[review.provider_id].append(review.rating)
    return {provider_id: sum(values) / len(values) for provider_id, values in ratings.items()}


def build_catalog(
    offerings: List[ServiceOffering],
    listings: List[Listing],
    categories: List[Category],
    ratings: Dict[str, float]
) -> List[CatalogEntry]:
    """Priced services of active providers, annotated for the prompt."""
    by_id = {listing.id: listing for listing in listings}
    category_names = {category.id: category.name for category in categories}
    entries = []
    for offering in offerings:
        listing = by_id.get(offering.provider_id)
        price = format_price(offering)
        if listing is None or price is None:
            continue
        entries.append(CatalogEntry(
            provider_name=listing.name,
            category=category_names.get(offering.category_id, "Otros"),
            service=offering.service_name or offering.description or "Servicio",
            price=price,
            city=listing.city or "No especificada",
            rating=ratings.get(listing.id),
            verified=listing.is_verified
        ))
    return entries


def shown_in_prompt(catalog: List[CatalogEntry]) -> List[CatalogEntry]:
    """Entries the catalog section has room for, grouped by category."""
    by_category: Dict[str, List[CatalogEntry]] = defaultdict(list)
    for entry in catalog:
        by_category[entry.category].append(entry)
    return [
        entry
        for entries in list(by_category.values())[:CATALOG_CATEGORIES]
        for entry in entries[:CATALOG_ENTRIES_PER_CATEGORY]
    ]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ContextBuilder:
    """Builds the retrieval context block from the marketplace tables.

    Args:
        repository: Marketplace read access
        max_chars: Upper bound of the serialized block
        clock: Returns the current aware UTC time
    """

    def __init__(
        self,
        repository: MarketplaceRepository,
        max_chars: int = MAX_CONTEXT_CHARS,
        clock: Callable[[], datetime] = _utcnow
    ):
        self.repository = repository
        self.max_chars = max_chars
        self.clock = clock

    async def _fetch_all(self) -> Dict[str, object]:
        since = self.clock() - timedelta(days=ACTIVITY_WINDOW_DAYS)
        reads = {
            "listings": asyncio.to_thread(self.repository.fetch_active_listings),
            "categories": asyncio.to_thread(self.repository.fetch_categories),
            "reviews": asyncio.to_thread(self.repository.fetch_recent_reviews, 50),
            "activity": asyncio.to_thread(self.repository.fetch_activity_since, since, 100),
            "catalog": asyncio.to_thread(self.repository.fetch_service_catalog, 200),
        }
        results = await asyncio.gather(*reads.values(), return_exceptions=True)
        return dict(zip(reads.keys(), results))

    async def build_context(self) -> ContextBlock:
        """Read the marketplace concurrently and serialize the summary.

        Returns:
            ContextBlock; sections whose reads failed are listed in ``omitted``
        """
        data = await self._fetch_all()
        failed = set()
        for source, result in data.items():
            if isinstance(result, Exception):
                logger.warning("context read failed source=%s error=%r", source, result)
                failed.add(source)

        listings: List[Listing] = [] if "listings" in failed else data["listings"]
        categories: List[Category] = [] if "categories" in failed else data["categories"]
        reviews: List[Review] = [] if "reviews" in failed else data["reviews"]
        activity: List[ActivityEvent] = [] if "activity" in failed else data["activity"]
        offerings: List[ServiceOffering] = [] if "catalog" in failed else data["catalog"]

        names = {listing.id: listing.name for listing in listings}
        block = ContextBlock(text="")
        rendered: List[str] = [HEADER]

        for section in SECTION_SOURCES:
            if failed.intersection(SECTION_SOURCES[section]):
                block.omitted.append(section)
                continue
            if section == "stats":
                text = self._render_stats(listings, categories, reviews, "categories" in failed, "reviews" in failed)
            elif section == "categories":
                text = self._render_categories(categories)
            elif section == "top_rated":
                text = self._render_top_rated(rank_top_rated(reviews, names))
            elif section == "most_active":
                text = self._render_most_active(rank_most_active(activity), names)
            else:
                block.catalog = shown_in_prompt(
                    build_catalog(offerings, listings, categories, mean_ratings(reviews))
                )
                text = self._render_catalog(block.catalog)
            rendered.append(text)
            block.sections.append(section)

        block.text = self._bound("\n\n".join(rendered))
        # Candidates are limited to what the model actually sees
        block.catalog = [entry for entry in block.catalog if entry.render() in block.text]
        return block

    def _bound(self, text: str) -> str:
        if len(text) <= self.max_chars:
            return text
        cut = text[:self.max_chars]
        newline = cut.rfind("\n")
        return cut[:newline] if newline > 0 else cut

    @staticmethod
    def _render_stats(listings, categories, reviews, categories_failed, reviews_failed) -> str:
        cities = sorted({listing.city for listing in listings if listing.city})
        lines = ["ESTADÍSTICAS ACTUALES:", f"- Proveedores activos: {len(listings)}"]
        if not categories_failed:
            lines.append(f"- Categorías disponibles: {len(categories)}")
        if not reviews_failed:
            lines.append(f"- Reseñas recientes: {len(reviews)}")
        lines.append(f"- Ciudades con proveedores: {', '.join(cities) or 'Sin datos'}")
        return "\n".join(lines)

    @staticmethod
    def _render_categories(categories: List[Category]) -> str:
        body = "\n".join(f"- {c.name} ({c.slug})" for c in categories) or "No hay categorías"
        return f"CATEGORÍAS DISPONIBLES:\n{body}"

    @staticmethod
    def _render_top_rated(top: List[RatedProvider]) -> str:
        body = "\n".join(
            f"- {p.name}: {p.avg_rating:.1f}⭐ ({p.review_count} reseñas)" for p in top
        ) or "No hay suficientes reseñas"
        return f"PROVEEDORES MEJOR CALIFICADOS:\n{body}"

    @staticmethod
    def _render_most_active(active: List[Tuple[str, int]], names: Dict[str, str]) -> str:
        body = "\n".join(
            f"- {names.get(provider_id, UNKNOWN_PROVIDER)}: {visits} visitas"
            for provider_id, visits in active
        ) or "No hay datos de visitas"
        return f"PROVEEDORES MÁS VISITADOS (última semana):\n{body}"

    @staticmethod
    def _render_catalog(catalog: List[CatalogEntry]) -> str:
        by_category: Dict[str, List[CatalogEntry]] = defaultdict(list)
        for entry in catalog:
            by_category[entry.category].append(entry)
        parts = []
        for category, entries in by_category.items():
            lines = [f"{category.upper()}:"]
            lines.extend(entry.render() for entry in entries)
            parts.append("\n".join(lines))
        body = "\n\n".join(parts) or "Información de servicios no disponible"
        return f"PROVEEDORES Y SERVICIOS POR CATEGORÍA:\n{body}"
