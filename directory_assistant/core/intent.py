"""
Search intent detection.

Recognizes when a question is a search for a provider: which service type it
names, which city, and whether it mentions a budget. The same keyword tables
keep search-style questions out of the canned answers.
"""

import re
import unicodedata
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

# Service type -> word stems, matched at the start of a word after accent folding.
SERVICE_KEYWORDS: Dict[str, Tuple[str, ...]] = {
    "fotografia": ("fotograf", "foto", "video", "camarograf"),
    "musica": ("dj", "musica", "musico", "mariachi", "sonido", "grupo musical", "banda"),
    "banquetes": ("banquete", "catering", "comida", "meser", "taquiza"),
    "decoracion": ("decora", "flores", "florist", "mobiliario", "centros de mesa"),
    "reposteria": ("pastel", "reposter", "postre", "candy bar", "mesa de dulces"),
    "snacks": ("elote", "snack", "botana", "palomitas"),
    "transporte": ("transporte", "limusina", "camion", "autobus"),
    "salones": ("salon", "jardin", "venue", "hacienda", "terraza"),
}

KNOWN_CITIES: Tuple[str, ...] = (
    "san luis potosi", "ciudad de mexico", "monterrey", "guadalajara", "cdmx",
    "queretaro", "puebla", "leon", "aguascalientes", "potosi", "slp",
)

SEARCH_VERBS: Tuple[str, ...] = (
    "busco", "buscando", "necesito", "ocupo", "recomienda", "recomiendas",
    "recomiendame", "quiero contratar", "proveedor", "proveedores",
)

_BUDGET_RE = re.compile(
    r"\$\s?\d[\d,\.]*|\b\d[\d,\.]*\s*(?:pesos?|mxn|mx|mil)\b",
    re.IGNORECASE
)
_CITY_AFTER_EN_RE = re.compile(r"\ben\s+([A-ZÁÉÍÓÚÑ][\wáéíóúñ]+(?:\s+[A-ZÁÉÍÓÚÑ][\wáéíóúñ]+)*)")


def fold(text: str) -> str:
    """Lowercase, strip accents and collapse whitespace."""
    decomposed = unicodedata.normalize("NFKD", text.lower())
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return " ".join(stripped.split())


def _contains_stem(folded: str, stem: str) -> bool:
    return re.search(r"\b" + re.escape(stem), folded) is not None


def _contains_phrase(folded: str, phrase: str) -> bool:
    return re.search(r"\b" + re.escape(phrase) + r"\b", folded) is not None


@dataclass(frozen=True)
class SearchIntent:
    """What a question asks for, as far as keywords can tell."""
    service_type: Optional[str] = None
    city: Optional[str] = None
    has_budget: bool = False
    has_search_verb: bool = False

    @property
    def is_search(self) -> bool:
        return self.service_type is not None

    @property
    def missing_slots(self) -> List[str]:
        """Slots a provider search needs before it is worth answering."""
        if not self.is_search:
            return []
        return [] if self.city else ["city"]


def detect_service_type(question: str) -> Optional[str]:
    folded = fold(question)
    for service_type, stems in SERVICE_KEYWORDS.items():
        if any(_contains_stem(folded, stem) for stem in stems):
            return service_type
    return None


def detect_city(question: str) -> Optional[str]:
    """Return the city a question mentions, in the user's own spelling."""
    folded = fold(question)
    for city in KNOWN_CITIES:
        if _contains_phrase(folded, city):
            return city.title() if city not in ("cdmx", "slp") else city.upper()
    match = _CITY_AFTER_EN_RE.search(question)
    if match:
        return match.group(1)
    return None


def has_budget(question: str) -> bool:
    return _BUDGET_RE.search(question) is not None


def has_search_trigger(question: str) -> bool:
    """True when a question looks like a search for a service or provider."""
    folded = fold(question)
    if detect_service_type(question) is not None:
        return True
    if any(_contains_phrase(folded, city) for city in KNOWN_CITIES):
        return True
    if any(_contains_phrase(folded, verb) for verb in SEARCH_VERBS):
        return True
    return has_budget(question)


def detect_intent(question: str) -> SearchIntent:
    folded = fold(question)
    return SearchIntent(
        service_type=detect_service_type(question),
        city=detect_city(question),
        has_budget=has_budget(question),
        has_search_verb=any(_contains_phrase(folded, verb) for verb in SEARCH_VERBS)
    )


def intent_instructions(intent: SearchIntent) -> str:
    """Extra prompt instructions for the combination of slots a question fills."""
    has_location = intent.city is not None
    has_category = intent.service_type is not None
    if intent.has_budget and has_location and has_category:
        return ("El usuario menciona presupuesto, ubicación y categoría. Recomienda solo "
                "proveedores de esa categoría, en esa ciudad y dentro de ese presupuesto.")
    if intent.has_budget and has_location:
        return ("El usuario menciona presupuesto y ubicación. Da 2-3 recomendaciones de esa "
                "ciudad con rangos de precio que se ajusten a su presupuesto.")
    if has_category:
        return "El usuario busca una categoría específica. Recomienda solo proveedores de esa categoría."
    if intent.has_budget:
        return "El usuario menciona un presupuesto. Recomienda opciones dentro de ese rango de precio."
    if has_location:
        return "El usuario pregunta por una ubicación. Considera solo proveedores de esa ciudad."
    if intent.has_search_verb:
        return ("El usuario busca un proveedor sin decir de qué tipo. Pregunta qué servicio "
                "necesita y menciona las categorías disponibles.")
    return ""
