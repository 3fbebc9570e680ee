"""
oralexam/services/code_review.py
Prompt construction and response parsing for LLM code reviews

The provider is asked for a JSON object:
{
    "feedback": str,
    "issues": [{type, line, description, severity}],
    "discussionPlan": [{topic, question, context, expectedAnswer, followUpQuestions}]
}
Responses cut off by the token cap get one structural repair attempt.
"""
import json
import logging
import os
from typing import Any, Dict, List, NamedTuple, Optional

from oralexam.exceptions import MalformedResponseError
from oralexam.services.json_repair import repair_truncated_json, strip_code_fence
from oralexam.services.llm_client import ChatCompletion

logger = logging.getLogger(__name__)


class LanguageInfo(NamedTuple):
    name: str
    code_block: str


GENERIC_LANGUAGE = LanguageInfo("programming", "")

LANGUAGE_MAP = {
    ".java": LanguageInfo("Java", "java"),
    ".py": LanguageInfo("Python", "python"),
    ".js": LanguageInfo("JavaScript", "javascript"),
    ".ts": LanguageInfo("TypeScript", "typescript"),
    ".jsx": LanguageInfo("JavaScript (React)", "jsx"),
    ".tsx": LanguageInfo("TypeScript (React)", "tsx"),
    ".c": LanguageInfo("C", "c"),
    ".h": LanguageInfo("C/C++ Header", "c"),
    ".cpp": LanguageInfo("C++", "cpp"),
    ".cc": LanguageInfo("C++", "cpp"),
    ".hpp": LanguageInfo("C++ Header", "cpp"),
    ".cs": LanguageInfo("C#", "csharp"),
    ".go": LanguageInfo("Go", "go"),
    ".rs": LanguageInfo("Rust", "rust"),
    ".rb": LanguageInfo("Ruby", "ruby"),
    ".php": LanguageInfo("PHP", "php"),
    ".kt": LanguageInfo("Kotlin", "kotlin"),
    ".scala": LanguageInfo("Scala", "scala"),
    ".swift": LanguageInfo("Swift", "swift"),
    ".sql": LanguageInfo("SQL", "sql"),
    ".sh": LanguageInfo("Shell/Bash", "bash"),
}

ISSUE_TYPES = ("error", "warning", "suggestion")
ISSUE_SEVERITIES = ("critical", "major", "minor")

MULTI_FILE_MARKER = "// ===== "


class ParsedReview(NamedTuple):
    feedback: str
    issues: List[Dict[str, Any]]
    discussion_plan: List[Dict[str, Any]]
    repaired: bool


def detect_language(file_name: Optional[str]) -> LanguageInfo:
    if not file_name:
        return GENERIC_LANGUAGE
    _, ext = os.path.splitext(file_name.lower())
    return LANGUAGE_MAP.get(ext, GENERIC_LANGUAGE)


def build_review_system_prompt(language: LanguageInfo) -> str:
    return f"""You are an experienced programming teacher reviewing a student's {language.name} submission.

Review the code for correctness, structure, style and idiomatic use of {language.name}.
Identify concrete issues with a severity, then prepare a plan for a short oral
examination in which the student must show they understand their own code.

Respond ONLY with a JSON object of this shape:
{{
  "feedback": "<overall feedback>",
  "issues": [
    {{"type": "error|warning|suggestion", "line": <line number or null>,
      "description": "<what is wrong>", "severity": "critical|major|minor"}}
  ],
  "discussionPlan": [
    {{"topic": "<topic>", "question": "<question to ask>", "context": "<why it matters>",
      "expectedAnswer": "<what a good answer covers>", "followUpQuestions": ["<follow-up>"]}}
  ]
}}

For the discussion plan:
- Ask about design decisions and trade-offs, not syntax trivia
- Keep questions conversational; they will be asked by voice
- Cover 3 to 5 different parts of the code"""


def build_review_user_prompt(
    code: str,
    file_name: Optional[str],
    language: LanguageInfo,
    assignment_prompt: Optional[str] = None,
) -> str:
    parts = []
    if assignment_prompt:
        parts.append(f"Assignment-specific review instructions:\n{assignment_prompt}\n")

    if MULTI_FILE_MARKER in code:
        parts.append(
            "This submission contains several files concatenated together. "
            "Each file starts with a '// ===== <file name> =====' line.\n"
        )

    header = f"Please review the following {language.name} code"
    if file_name:
        header += f" ({file_name})"
    parts.append(f"{header}:\n\n```{language.code_block}\n{code}\n```")
    return "\n".join(parts)


def normalize_issue(issue: Any) -> Dict[str, Any]:
    obj = issue if isinstance(issue, dict) else {}
    line = obj.get("line")
    return {
        "type": obj.get("type") if obj.get("type") in ISSUE_TYPES else "warning",
        "line": line if isinstance(line, int) and not isinstance(line, bool) else None,
        "description": obj.get("description") if isinstance(obj.get("description"), str) else "No description",
        "severity": obj.get("severity") if obj.get("severity") in ISSUE_SEVERITIES else "minor",
    }


def normalize_discussion_point(point: Any) -> Dict[str, Any]:
    obj = point if isinstance(point, dict) else {}
    follow_ups = obj.get("followUpQuestions")
    return {
        "topic": obj.get("topic") if isinstance(obj.get("topic"), str) else "General",
        "question": obj.get("question") if isinstance(obj.get("question"), str) else "",
        "context": obj.get("context") if isinstance(obj.get("context"), str) else "",
        "expectedAnswer": obj.get("expectedAnswer") if isinstance(obj.get("expectedAnswer"), str) else None,
        "followUpQuestions": [q for q in follow_ups if isinstance(q, str)] if isinstance(follow_ups, list) else [],
    }


def parse_review_response(completion: ChatCompletion) -> ParsedReview:
    """
    Parse a review completion into normalized feedback, issues and plan.

    Raises:
        MalformedResponseError: Empty content, unparsable JSON, or a
            truncated response that could not be repaired
    """
    raw = completion.content
    if not raw or not raw.strip():
        raise MalformedResponseError("Review response was empty")

    repaired = False
    try:
        parsed = json.loads(strip_code_fence(raw))
    except ValueError as e:
        if not completion.truncated:
            logger.error(f"Failed to parse review response: {e}; head={raw[:200]!r}")
            raise MalformedResponseError(f"Failed to parse review response: {e}") from e

        logger.warning(f"Review response truncated at {len(raw)} chars, attempting repair")
        parsed = repair_truncated_json(raw)
        if parsed is None:
            logger.error(f"Failed to repair truncated review response; tail={raw[-200:]!r}")
            raise MalformedResponseError("Review response was truncated and could not be repaired") from e
        repaired = True
        logger.info("Repaired truncated review response")

    if not isinstance(parsed, dict):
        raise MalformedResponseError("Review response is not a JSON object")

    issues = parsed.get("issues")
    plan = parsed.get("discussionPlan")
    return ParsedReview(
        feedback=parsed.get("feedback") if isinstance(parsed.get("feedback"), str) else "",
        issues=[normalize_issue(i) for i in issues] if isinstance(issues, list) else [],
        discussion_plan=[normalize_discussion_point(p) for p in plan] if isinstance(plan, list) else [],
        repaired=repaired,
    )


def condense_discussion_plan(plan: List[Dict[str, Any]]) -> str:
    """Plain-text plan for grader prompts."""
    if not plan:
        return "No specific discussion points. Judge the student's general understanding of their code."

    lines = []
    for index, point in enumerate(plan, start=1):
        text = f"{index}. {point.get('topic', 'General')}\n   Question: {point.get('question', '')}"
        if point.get("expectedAnswer"):
            text += f"\n   Expected: {point['expectedAnswer']}"
        follow_ups = point.get("followUpQuestions") or []
        if follow_ups:
            text += f"\n   Follow-ups: {'; '.join(follow_ups)}"
        lines.append(text)
    return "\n\n".join(lines)
