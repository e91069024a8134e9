"""Select one candidate per block and rewrite it into a structured problem."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from config import PipelineSettings, Settings
from .json_payload import ResponseParseError, extract_json_object
from .llm_client import TextGenerator
from .logging_utils import get_logger
from .pipeline import Block, Candidate, ProblemPatch, QualityReport, RewriteStatus

logger = get_logger(__name__)

DEFAULT_SYSTEM_PROMPT = "You author rigorous mathematics assessment items."
TRANSLATOR_SYSTEM_PROMPT = (
    "You are a precise bilingual translator for mathematics education content. Maintain "
    "mathematical notation and LaTeX as-is, keep any bullet or numbered structure, and return only "
    "the translated text in the target language without additional commentary."
)
TRANSLATOR_INSTRUCTIONS = (
    "Translate the provided content into English. Keep LaTeX and math notation untouched. "
    "Return English text only."
)

NO_ELIGIBLE_REASON = "no eligible candidates"
SELECTION_NOT_FOUND = "selection not found"
PAYLOAD_MISSING = "payload missing"

_WHITESPACE = re.compile(r"\s+")
_ANSWER_LETTER = re.compile(r"^[A-Z]$")


class NoEligibleCandidates(RuntimeError):
    """Raised when a block has no text-only candidates to choose from."""


class SelectionNotFound(RuntimeError):
    """Raised when the model picks a candidate id outside the offered pool."""


class PayloadMissing(RuntimeError):
    """Raised when the model selects a candidate but returns no problem."""


class ProblemValidationError(RuntimeError):
    """Raised when required problem fields are missing or inconsistent."""

    def __init__(self, fields: Sequence[str]):
        self.fields = list(fields)
        super().__init__(f"Missing or invalid fields: {', '.join(self.fields)}")


@dataclass
class RewriteOutcome:
    status: RewriteStatus
    candidate_ids: List[str] = field(default_factory=list)
    chosen_candidate_id: Optional[str] = None
    patch: Optional[ProblemPatch] = None
    raw_response: str = ""
    reason: Optional[str] = None
    message: Optional[str] = None
    quality_report: Optional[QualityReport] = None


def eligible_pool(candidates: Sequence[Candidate], top_k: int) -> List[Candidate]:
    """
    Return the text-only candidates with the highest confidence.

    Candidates flagged ``has_image`` or with blank text are dropped; ties keep
    their original order.

    Raises:
        NoEligibleCandidates: if nothing survives the filter.
    """
    pool = [candidate for candidate in candidates if not candidate.has_image and candidate.text.strip()]
    pool.sort(key=lambda candidate: candidate.confidence, reverse=True)
    pool = pool[: max(1, int(top_k))]
    if not pool:
        raise NoEligibleCandidates(NO_ELIGIBLE_REASON)
    return pool


def sanitize(value: Any) -> str:
    if not isinstance(value, str):
        return ""
    return _WHITESPACE.sub(" ", value.strip())


def build_rewrite_prompt(
    block: Block, pool: Sequence[Candidate], settings: PipelineSettings
) -> str:
    """Render the candidate pool, rubric and output schema for one block."""
    options_count = settings.options_count
    lines: List[str] = [f"Block ID: {block.id}", "", "## Candidate Pool"]
    for index, candidate in enumerate(pool):
        details = [f"Candidate {index + 1}", f"id: {candidate.id}"]
        if candidate.classification:
            details.append(f"classification: {candidate.classification}")
        details.append(f"confidence: {candidate.confidence:.2f}")
        if candidate.notes:
            details.append(f"notes: {candidate.notes}")
        lines.append(" | ".join(details))
        lines.append("---")
        lines.append(candidate.text.strip())
        lines.append("")

    lines.extend(
        [
            "## Rubric",
            "Pick the candidate that best satisfies all of the following:",
            "- difficulty suited to the allowed levels",
            "- self-contained statement with every quantity defined",
            "- no leakage of the solution in the statement",
            "- a single well-defined answer",
            "- an answer that can be checked quantitatively",
            "",
            "## Output Requirements",
            "Respond with pure JSON only, no commentary.",
            "Schema: {",
            '  "chosenCandidateId": string (use "none" if skipping),',
            '  "reason": string,',
            '  "quality": { "difficultyNote": string, "selfContained": boolean, "noLeakage": boolean,',
            '    "singleAnswer": boolean, "quantitative": boolean, "overall": "pass" | "fail", "notes": string },',
            '  "problem": {',
            '    "question": string,',
        ]
    )
    if settings.is_multiple_choice:
        lines.append(
            f'    "options": string[{options_count}] (exactly {options_count} options, ordered A, B, C, ...),'
        )
        lines.append('    "answer": string (the capital letter of the correct option),')
    else:
        lines.append('    "options": [],')
        lines.append('    "answer": string,')
    lines.extend(
        [
            '    "subfield": string (from allowed list),',
            '    "academicLevel": string (from allowed list),',
            '    "difficulty": string (from allowed list)',
            "  } | null",
            "}",
            'If chosenCandidateId is "none", set problem to null and provide a clear reason.',
            "",
            f"Question type: {settings.target_question_type}",
            "Allowed subfields: " + "; ".join(settings.subfields),
            "Allowed academic levels: " + "; ".join(settings.academic_levels),
            "Allowed difficulties: " + "; ".join(settings.difficulties),
            "",
            "Guidelines:",
            "- Pick at most one candidate.",
            "- Skip definitions/theorems/summaries that lack a direct question.",
            "- Skip anything that clearly references figures or diagrams.",
            "- Keep the mathematical intent intact and ensure the solution is unique and consistent.",
            "- Produce concise, MathJax-compatible expressions (no Markdown code fences).",
        ]
    )
    return "\n".join(lines)


def build_patch(problem: Dict[str, Any], settings: PipelineSettings) -> ProblemPatch:
    """
    Normalize and validate a ``problem`` payload.

    Every offending field is reported at once.

    Raises:
        ProblemValidationError: listing ``question``, ``answer``, ``subfield``,
            ``academicLevel``, ``difficulty``, ``options``, ``answerLetter`` or
            ``answerIndex``.
    """
    multiple_choice = settings.is_multiple_choice
    raw_options = problem.get("options")
    options = [sanitize(option) for option in raw_options] if isinstance(raw_options, list) else []
    answer = sanitize(problem.get("answer"))
    if multiple_choice and len(answer) == 1:
        answer = answer.upper()

    patch = ProblemPatch(
        question_type=settings.target_question_type,
        question=sanitize(problem.get("question")),
        options=options if multiple_choice else [option for option in options if option],
        answer=answer,
        subfield=sanitize(problem.get("subfield")),
        academic_level=sanitize(problem.get("academicLevel")),
        difficulty=sanitize(problem.get("difficulty")),
    )

    issues: List[str] = []
    for name, value in (
        ("question", patch.question),
        ("answer", patch.answer),
        ("subfield", patch.subfield),
        ("academicLevel", patch.academic_level),
        ("difficulty", patch.difficulty),
    ):
        if not value:
            issues.append(name)

    if multiple_choice:
        if len(patch.options) != settings.options_count or not all(patch.options):
            issues.append("options")
        if not _ANSWER_LETTER.match(patch.answer):
            issues.append("answerLetter")
        else:
            index = ord(patch.answer) - ord("A")
            if index >= len(patch.options) or not patch.options[index]:
                issues.append("answerIndex")

    if issues:
        raise ProblemValidationError(issues)
    return patch


def parse_quality(value: Any) -> Optional[QualityReport]:
    if not isinstance(value, dict):
        return None
    overall = sanitize(value.get("overall")).lower()
    return QualityReport(
        difficulty_note=sanitize(value.get("difficultyNote")),
        self_contained=bool(value.get("selfContained")),
        no_leakage=bool(value.get("noLeakage")),
        single_answer=bool(value.get("singleAnswer")),
        quantitative=bool(value.get("quantitative")),
        overall="pass" if overall == "pass" else "fail",
        notes=sanitize(value.get("notes")) or None,
    )


class CandidateRewriter:
    """Run the selection-and-rewrite request for one block at a time."""

    def __init__(
        self,
        settings: Settings,
        generator: TextGenerator,
        translator: Optional[TextGenerator] = None,
    ):
        self.settings = settings
        self.generator = generator
        self.translator = translator
        self.system_prompt = (settings.generator_prompt or "").strip() or DEFAULT_SYSTEM_PROMPT

    async def rewrite_block(
        self,
        block: Block,
        candidates: Sequence[Candidate],
        pipeline_settings: PipelineSettings,
    ) -> RewriteOutcome:
        """
        Choose and rewrite at most one candidate of ``block``.

        Selection, payload and field problems are encoded in the returned
        outcome. Transport failures from the generator propagate.
        """
        try:
            pool = eligible_pool(candidates, pipeline_settings.top_k)
        except NoEligibleCandidates:
            return RewriteOutcome(status=RewriteStatus.SKIPPED, reason=NO_ELIGIBLE_REASON)

        candidate_ids = [candidate.id for candidate in pool]
        prompt = build_rewrite_prompt(block, pool, pipeline_settings)
        raw = await self.generator.generate(self.system_prompt, prompt, temperature=0.2)

        try:
            payload = extract_json_object(raw)
        except ResponseParseError as exc:
            return RewriteOutcome(
                status=RewriteStatus.ERROR,
                candidate_ids=candidate_ids,
                raw_response=raw,
                message=str(exc),
            )

        reason = sanitize(payload.get("reason")) or None
        quality = parse_quality(payload.get("quality"))
        chosen = sanitize(payload.get("chosenCandidateId")) or None

        if chosen is None or chosen.lower() == "none":
            if payload.get("problem"):
                logger.warning("Block %s: model skipped but returned a problem; discarding it", block.id)
            return RewriteOutcome(
                status=RewriteStatus.SKIPPED,
                candidate_ids=candidate_ids,
                raw_response=raw,
                reason=reason or "model indicated no suitable candidate",
                quality_report=quality,
            )

        try:
            if chosen not in candidate_ids:
                raise SelectionNotFound(SELECTION_NOT_FOUND)
            problem = payload.get("problem")
            if not isinstance(problem, dict):
                raise PayloadMissing(PAYLOAD_MISSING)
            patch = build_patch(problem, pipeline_settings)
        except (SelectionNotFound, PayloadMissing, ProblemValidationError) as exc:
            return RewriteOutcome(
                status=RewriteStatus.ERROR,
                candidate_ids=candidate_ids,
                chosen_candidate_id=chosen if chosen in candidate_ids else None,
                raw_response=raw,
                reason=reason,
                message=str(exc),
                quality_report=quality,
            )

        outcome = RewriteOutcome(
            status=RewriteStatus.CONVERTED,
            candidate_ids=candidate_ids,
            chosen_candidate_id=chosen,
            patch=patch,
            raw_response=raw,
            reason=reason,
            quality_report=quality,
        )
        if self.settings.translate_output and self.translator is not None:
            await self._translate(block, outcome)
        return outcome

    async def _translate(self, block: Block, outcome: RewriteOutcome) -> None:
        patch = outcome.patch
        try:
            question = await self._translate_text(patch.question)
            options = [await self._translate_text(option) for option in patch.options]
            answer = patch.answer
            if not _ANSWER_LETTER.match(answer):
                answer = await self._translate_text(answer)
        except Exception as exc:  # pylint: disable=broad-except
            logger.warning("Translation failed for block %s: %s", block.id, exc)
            outcome.message = f"translation failed: {exc}"
            return
        patch.question = question
        patch.options = options
        patch.answer = answer

    async def _translate_text(self, text: str) -> str:
        if not text:
            return text
        translated = await self.translator.generate(
            TRANSLATOR_SYSTEM_PROMPT,
            f"{TRANSLATOR_INSTRUCTIONS}\n\n{text}",
            temperature=0.0,
            model=self.settings.translator_model,
        )
        return sanitize(translated) or text
