"""Prompt Builder for grounded study answers.

Builds the chat messages sent to a completion provider: an academic-assistant
system prompt tuned by answer style and depth, followed by the retrieved
context and the student's question.
"""

from typing import Dict, List

from campus_rag.models.chunk import ContextBundle
from campus_rag.models.completion import AnswerDepth, AnswerStyle
from campus_rag.utils.logging import get_logger

logger = get_logger("prompt_builder")

_STYLE_INSTRUCTIONS = {
    AnswerStyle.FORMAL: (
        "Use an academic register: precise terminology, formal definitions and "
        "rigorous reasoning."
    ),
    AnswerStyle.PRACTICAL: (
        "Favour worked examples and concrete applications over formal definitions."
    ),
    AnswerStyle.BALANCED: (
        "Combine clear definitions with at least one illustrative example."
    ),
}

_DEPTH_INSTRUCTIONS = {
    AnswerDepth.BASIC: "Keep the explanation introductory and short. Avoid advanced notation.",
    AnswerDepth.INTERMEDIATE: "Explain the key ideas step by step at undergraduate level.",
    AnswerDepth.ADVANCED: (
        "Go into full detail, including derivations, edge cases and connections to related topics."
    ),
}

NO_CONTEXT_PLACEHOLDER = "(no course material matched this question)"

SUMMARY_JSON_TEMPLATE = """{
  "theoreticalContext": "Theoretical background and conceptual framework (2-3 paragraphs)",
  "keyIdeas": ["Key idea", "..."],
  "definitions": [{"term": "Term", "definition": "Clear definition", "formula": "Formula, if any"}],
  "examples": [{"description": "Worked example", "solution": "Step-by-step solution, if any"}],
  "commonMistakes": ["Common mistake and how to avoid it", "..."],
  "reviewChecklist": ["Point to review", "..."],
  "references": ["Source referred to by the material", "..."]
}"""


class PromptBuilder:
    """Builds system and user messages for the completion orchestrator."""

    def build_system_prompt(
        self,
        style: AnswerStyle = AnswerStyle.BALANCED,
        depth: AnswerDepth = AnswerDepth.INTERMEDIATE,
    ) -> str:
        """
        Build the system prompt.

        The prompt structure is:
        1. Assistant role and grounding rules
        2. Citation instructions
        3. Style and depth preferences
        """
        prompt_parts = [
            (
                "You are a study assistant for university students. Answer the question using "
                "only the course material provided in the context. If the material does not "
                "contain the answer, say so instead of guessing."
            ),
            (
                "Each context passage starts with a source marker such as [S1]. After every "
                "statement taken from the material, cite its passages with those markers, for "
                "example [S1] or [S1, S3]. Do not invent markers."
            ),
            f"Style: {_STYLE_INSTRUCTIONS[style]}",
            f"Depth: {_DEPTH_INSTRUCTIONS[depth]}",
        ]
        return "\n\n".join(prompt_parts)

    @staticmethod
    def build_user_prompt(question: str, bundle: ContextBundle) -> str:
        context = bundle.assembled_text or NO_CONTEXT_PLACEHOLDER
        return f"Context:\n{context}\n\nQuestion: {question.strip()}"

    def build_messages(
        self,
        question: str,
        bundle: ContextBundle,
        style: AnswerStyle = AnswerStyle.BALANCED,
        depth: AnswerDepth = AnswerDepth.INTERMEDIATE,
    ) -> List[Dict[str, str]]:
        messages = [
            {"role": "system", "content": self.build_system_prompt(style, depth)},
            {"role": "user", "content": self.build_user_prompt(question, bundle)},
        ]
        logger.debug(
            f"Built prompt: sources={len(bundle.chunks)}, style={style.value}, depth={depth.value}"
        )
        return messages

    def build_summary_messages(
        self,
        content: str,
        depth: AnswerDepth = AnswerDepth.INTERMEDIATE,
    ) -> List[Dict[str, str]]:
        """Messages asking for a structured study summary of ``content`` as JSON."""
        system_prompt = "\n\n".join(
            [
                (
                    "You write academic study summaries for university students in the style of a "
                    "Harvard case brief. Use only the material provided."
                ),
                f"Depth: {_DEPTH_INSTRUCTIONS[depth]}",
                "Respond with a single JSON object and nothing else, using exactly this structure:\n"
                + SUMMARY_JSON_TEMPLATE,
            ]
        )
        return [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": f"Material:\n{content.strip()}"},
        ]
