"""
Prompt assembly for the generation call.
"""

from dataclasses import dataclass
from typing import Dict, List, Optional

from .intent import SearchIntent, intent_instructions
from .session import Turn
from .token_counter import truncate_to_tokens

ASSISTANT_INSTRUCTIONS = """INSTRUCCIONES PARA EL ASISTENTE:
- Responde siempre en español de México
- Sé breve y concreto: máximo 3-4 líneas por respuesta
- Cuando pregunten por presupuesto, menciona rangos basados en la información disponible
- Cuando pregunten por ubicación, considera solo proveedores de esa ciudad
- Incluye una invitación a contactar a los proveedores
- Si no tienes datos exactos, da rangos aproximados e invita a pedir cotización"""


@dataclass(frozen=True)
class Prompt:
    """Chat messages ready for the provider."""
    messages: List[Dict[str, str]]

    @property
    def text(self) -> str:
        """All message content, used to estimate input tokens."""
        return "\n".join(message["content"] for message in self.messages)


def build_prompt(
    context: str,
    history: List[Turn],
    question: str,
    max_question_tokens: int,
    intent: Optional[SearchIntent] = None,
    focused_provider: Optional[str] = None
) -> Prompt:
    """Context block + recent turns + the current question.

    Args:
        context: Serialized retrieval context
        history: Recent turns, oldest first, not including ``question``
        question: The question being answered
        max_question_tokens: Cap applied to the question text
        intent: Detected search intent, adds targeted instructions
        focused_provider: Provider a follow-up refers to
    """
    messages = [{"role": "system", "content": f"{context}\n\n{ASSISTANT_INSTRUCTIONS}"}]
    for turn in history:
        messages.append({"role": turn.role, "content": turn.text})

    user_content = f"PREGUNTA DEL USUARIO: {truncate_to_tokens(question, max_question_tokens)}"
    if focused_provider:
        user_content += f"\n\nEl usuario se refiere al proveedor: {focused_provider}."
    special = intent_instructions(intent) if intent else ""
    if special:
        user_content += f"\n\nESPECIAL: {special}"
    messages.append({"role": "user", "content": user_content})
    return Prompt(messages=messages)
