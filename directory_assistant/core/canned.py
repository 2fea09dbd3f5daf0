"""
Canned answers for trivial and frequently asked questions.

A short question about how the directory works is answered from a fixed
table without calling the model. Anything that looks like a search for a
service or provider always goes to the full pipeline instead.
"""

import re
from typing import Dict, Optional, Tuple

from .intent import fold, has_search_trigger

MAX_CANNED_QUESTION_LENGTH = 60

# topic -> (trigger phrases after accent folding, answer)
CANNED_ANSWERS: Dict[str, Tuple[Tuple[str, ...], str]] = {
    "saludo": (
        ("hola", "buenos dias", "buenas tardes", "buenas noches"),
        "¡Hola! 👋 Bienvenido al directorio de proveedores de eventos. Puedo ayudarte a "
        "encontrar proveedores. ¿Qué tipo de servicio necesitas?"
    ),
    "ayuda": (
        ("ayuda", "que puedes hacer", "en que me ayudas"),
        "Puedo ayudarte con: 🔍 buscar proveedores, ⭐ ver reseñas y calificaciones, "
        "💰 comparar precios y 📍 encontrar proveedores por ubicación. ¿Qué necesitas?"
    ),
    "horarios": (
        ("horario", "horarios", "a que hora", "abren"),
        "Nuestro directorio está disponible 24/7. Cada proveedor tiene su propio horario "
        "de atención, que puedes consultar en su perfil."
    ),
    "costo": (
        ("costo", "cuesta", "cuanto cuesta", "es gratis", "gratis", "tiene costo", "cobran"),
        "El directorio es completamente gratuito para usuarios. Los precios de los "
        "servicios varían según cada proveedor."
    ),
    "como_funciona": (
        ("como funciona", "como se usa", "que es esto"),
        "Somos un directorio de proveedores de eventos verificados. Puedes buscar por "
        "categoría o ubicación, leer reseñas y contactar directamente a los proveedores."
    ),
}


class CannedAnswerMatcher:
    """Static topic -> answer table.

    Only questions shorter than ``max_length`` that carry no search trigger
    are eligible.
    """

    def __init__(
        self,
        answers: Dict[str, Tuple[Tuple[str, ...], str]] = CANNED_ANSWERS,
        max_length: int = MAX_CANNED_QUESTION_LENGTH
    ):
        self.answers = answers
        self.max_length = max_length
        self._patterns = [
            (re.compile(r"\b(?:" + "|".join(re.escape(p) for p in phrases) + r")\b"), answer)
            for phrases, answer in answers.values()
        ]

    def match(self, question: str) -> Optional[str]:
        """Return the canned answer for ``question``, or None."""
        stripped = question.strip()
        if not stripped or len(stripped) >= self.max_length:
            return None
        if has_search_trigger(stripped):
            return None
        folded = fold(stripped)
        for pattern, answer in self._patterns:
            if pattern.search(folded):
                return answer
        return None

    def answer_for(self, topic: str) -> str:
        return self.answers[topic][1]
