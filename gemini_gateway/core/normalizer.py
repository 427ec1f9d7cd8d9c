from __future__ import annotations

from typing import Iterable

from .errors import InvalidConversation
from .types import (
    ConversationTurn,
    Diagnostic,
    NormalizationResult,
    NormalizedTurn,
    UpstreamRole,
)

SYSTEM_ROLES = frozenset({"system", "developer"})
SYSTEM_SEPARATOR = "\n\n"


def normalize_conversation(turns: Iterable[ConversationTurn]) -> NormalizationResult:
    """Turn an OpenAI message list into alternating Gemini ``contents``.

    System turns are buffered and folded into the first user turn. A leading
    model turn gets an empty user turn in front of it. Consecutive turns with
    the same role are kept as-is and reported as diagnostics; the upstream
    decides whether it accepts them.
    """

    output: list[NormalizedTurn] = []
    diagnostics: list[Diagnostic] = []
    system_buffer: list[str] = []
    folded = False

    for idx, turn in enumerate(turns):
        role = turn.role.lower()
        text = turn.content

        if role in SYSTEM_ROLES:
            system_buffer.append(text)
            continue

        mapped_role: UpstreamRole = "model" if role == "assistant" else "user"

        if mapped_role == "user" and not folded:
            if system_buffer:
                text = SYSTEM_SEPARATOR.join([*system_buffer, text])
                system_buffer = []
            folded = True

        if not output and mapped_role == "model":
            output.append(NormalizedTurn(role="user", text=""))
            diagnostics.append(
                Diagnostic(
                    code="placeholder_user",
                    message=(
                        f"messages[{idx}] is an assistant message at the start of the "
                        "conversation; inserted an empty user turn before it."
                    ),
                    index=idx,
                )
            )
        elif output and output[-1].role == mapped_role:
            diagnostics.append(
                Diagnostic(
                    code="consecutive_role",
                    message=(
                        f"messages[{idx}] repeats role '{mapped_role}' from the previous "
                        "turn; forwarded unchanged."
                    ),
                    index=idx,
                )
            )

        output.append(NormalizedTurn(role=mapped_role, text=text))

    if system_buffer:
        diagnostics.append(
            Diagnostic(
                code="system_dropped",
                message=(
                    f"Discarded {len(system_buffer)} system message(s) "
                    "not followed by an opening user message."
                ),
            )
        )

    if not output:
        raise InvalidConversation(
            "messages must include at least one user or assistant message."
        )

    return NormalizationResult(turns=tuple(output), diagnostics=tuple(diagnostics))
