"""
oralexam/services/examiner_prompt.py
Voice examiner instructions built from the authoritative review.

Reviews store their discussion plan either as a list of topics (what the
review pipeline writes) or as an object with overview / keyTopics /
conceptChecks (hand-edited plans). Both are normalised to one shape here.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

DEFAULT_OVERVIEW = "A programming assignment submission."

FALLBACK_TOPIC = {
    "topic": "Code explanation",
    "question": "Can you walk me through your code and explain what it does?",
    "expectedAnswer": "The student explains the main logic and flow in their own words",
    "followUp": "What does this specific part do?",
    "redFlags": ["Cannot explain basic logic", "Inconsistent terminology"],
}

FALLBACK_CONCEPT = {
    "concept": "General understanding",
    "question": "What was the most challenging part of this assignment?",
}


@dataclass
class DiscussionPlan:
    overview: str
    key_topics: List[Dict[str, Any]] = field(default_factory=list)
    concept_checks: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class ExamContext:
    student_name: str
    assignment_title: str
    assignment_description: str
    plan: DiscussionPlan
    language: str = "en"
    target_time_minutes: int = 30
    max_time_minutes: int = 35


def normalize_discussion_plan(raw: Any, feedback: Optional[str] = None) -> DiscussionPlan:
    """Accept either stored plan format, or nothing, and return a usable plan."""
    if isinstance(raw, list) and raw:
        topics = []
        for item in raw:
            if not isinstance(item, dict):
                continue
            follow_ups = item.get("followUpQuestions")
            topics.append({
                "topic": item.get("topic") or "General",
                "question": item.get("question") or "",
                "expectedAnswer": item.get("expectedAnswer") or "",
                "followUp": " ".join(follow_ups) if isinstance(follow_ups, list) else "",
                "redFlags": [],
            })
        return DiscussionPlan(overview=feedback or DEFAULT_OVERVIEW, key_topics=topics)

    if isinstance(raw, dict) and raw:
        topics = raw.get("keyTopics")
        checks = raw.get("conceptChecks")
        return DiscussionPlan(
            overview=raw.get("overview") or DEFAULT_OVERVIEW,
            key_topics=topics if isinstance(topics, list) else [],
            concept_checks=checks if isinstance(checks, list) else [],
        )

    return DiscussionPlan(
        overview=DEFAULT_OVERVIEW,
        key_topics=[dict(FALLBACK_TOPIC)],
        concept_checks=[dict(FALLBACK_CONCEPT)],
    )


def build_examiner_prompt(context: ExamContext) -> str:
    language_line = (
        "Speak in Swedish throughout the conversation."
        if context.language == "sv"
        else "Speak in English throughout the conversation."
    )

    topic_blocks = []
    for index, topic in enumerate(context.plan.key_topics, start=1):
        block = f"### Topic {index}: {topic.get('topic', 'General')}\n- Ask: \"{topic.get('question', '')}\""
        if topic.get("expectedAnswer"):
            block += f"\n- A student who wrote this code should mention: {topic['expectedAnswer']}"
        if topic.get("followUp"):
            block += f"\n- If they struggle, follow up with: \"{topic['followUp']}\""
        if topic.get("redFlags"):
            block += f"\n- Warning signs: {', '.join(topic['redFlags'])}"
        topic_blocks.append(block)

    concept_lines = [
        f"- {check.get('concept', 'Concept')}: \"{check.get('question', '')}\""
        for check in context.plan.concept_checks
    ]

    return f"""You are an oral examiner for a programming course.
You are holding an oral examination of about {context.target_time_minutes} minutes with {context.student_name} about the code they submitted for: {context.assignment_title}
The conversation must not run longer than {context.max_time_minutes} minutes.

{language_line}

## Assignment
{context.assignment_description or 'A programming assignment requiring demonstration of core concepts.'}

## What the code does
{context.plan.overview}

## Discussion topics
Cover these naturally during the conversation:

{chr(10).join(topic_blocks) or '- Ask the student to explain their solution.'}

## Concept checks
{chr(10).join(concept_lines) or '- None'}

## How to run the examination
1. Greet the student and ask them to describe their code in their own words
2. Work through the topics conversationally, not as a checklist
3. Probe partial answers with follow-up questions
4. Note rehearsed answers or inconsistencies without accusing the student
5. Finish by thanking the student and telling them a teacher will review the session"""


def build_first_message(student_name: str, assignment_title: str, language: str) -> str:
    first_name = (student_name or "").split(" ")[0] or student_name
    if language == "sv":
        return (
            f"Hej {first_name}! Välkommen till din muntliga examination för {assignment_title}. "
            "Kan du börja med att berätta med egna ord vad din kod gör?"
        )
    return (
        f"Hello {first_name}! Welcome to your oral examination for {assignment_title}. "
        "Could you start by describing in your own words what your code does?"
    )


def build_prompt_override(context: ExamContext) -> Dict[str, Any]:
    """Conversation config override the client sends when it connects."""
    return {
        "agent": {
            "prompt": {"prompt": build_examiner_prompt(context)},
            "first_message": build_first_message(context.student_name, context.assignment_title, context.language),
            "language": context.language,
        }
    }
