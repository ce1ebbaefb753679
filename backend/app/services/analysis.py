"""Analysis orchestrator: topic-by-topic health analysis over retrieved resources.

Resources come from a retrieval index query when a question is given, or
the full (wearable-filtered) resource set otherwise. Each topic is one
independent generation call; a failing topic renders as an inline error
block and never aborts the report.

Report layout::

    <OVERVIEW>
    ...
    </OVERVIEW>

    <KEY_HEALTH_METRICS_AND_VITAL_SIGNS>
    ...
    </KEY_HEALTH_METRICS_AND_VITAL_SIGNS>
"""

import asyncio
import logging
import re
from dataclasses import dataclass, field
from typing import Any

from app.config import settings
from app.services.document_sections import extract_tag_content
from app.services.generation import TextGenerator
from app.services.retrieval import RetrievalIndexManager
from app.services.textualize import resources_to_context
from app.services.wearable_filter import WearableMode

logger = logging.getLogger(__name__)

DEFAULT_TOPICS = (
    "Key health metrics and vital signs",
    "Chronic conditions and management status",
    "Medication adherence and effectiveness",
    "Recent diagnostic tests and findings",
    "Potential health concerns or risks",
    "Preventive care recommendations",
)

SYSTEM_PROMPT = (
    "You are a healthcare AI assistant analyzing FHIR health data. Provide concise, "
    "insightful analysis focusing on patterns, trends, and actionable insights."
)

TOPIC_PROMPT = (
    "{profile_info}\n\nHere is the health data to analyze:\n\n{context}\n\n"
    "Based on this data, provide a concise analysis of {topic}. Focus on providing "
    "actionable insights and identifying patterns or trends if present."
)

OVERVIEW_TEXT = "Analysis based on structured FHIR health records using RAG approach."

NO_DATA_SECTIONS = (
    ("OVERVIEW", "No health data available for analysis."),
    ("KEY_FINDINGS", "No health data was found in the system."),
    ("HEALTH_CONCERNS", "No health concerns could be identified due to lack of data."),
)

QUESTION_SYSTEM_PROMPT = """You are a health assistant. You provide personalized health insights based on a user's health records and profile information.

USER PROFILE:
{profile_info}

HEALTH RECORD SUMMARIES:
{context}

INSTRUCTIONS:
- Analyze the health record summaries and the user's question, then provide a thoughtful response.
- Cite specific records when relevant by referring to their resource type and ID.
- If you don't have enough information to answer a question, acknowledge that and suggest what information might be helpful.
- Structure your response with these XML-like tags:
  <ANSWER>The main answer to the user's question</ANSWER>
  <RELEVANT_RECORDS>Citation of specific records that informed your answer</RELEVANT_RECORDS>
  <ADDITIONAL_CONTEXT>Any important health context, disclaimers, or suggestions for additional information</ADDITIONAL_CONTEXT>
- NEVER make up information that is not in the health records.
"""

NO_RECORDS_CONTEXT = "No health records available for this user."

# Resources retrieved to answer a single question
QUESTION_RESOURCE_LIMIT = 20


def topic_tag(topic: str) -> str:
    """Block tag for a topic label: uppercase, whitespace runs to underscores."""
    return re.sub(r"\s+", "_", topic.strip().upper())


@dataclass
class AnalysisSection:
    tag: str
    content: str
    topic: str | None = None
    failed: bool = False

    def render(self) -> str:
        return f"<{self.tag}>\n{self.content}\n</{self.tag}>"


@dataclass
class AnalysisReport:
    """Assembled analysis: OVERVIEW first, then one block per topic."""

    sections: list[AnalysisSection] = field(default_factory=list)
    resource_count: int = 0
    used_index: bool = False

    @property
    def failed_topics(self) -> list[str]:
        return [s.topic for s in self.sections if s.failed and s.topic]

    def render(self) -> str:
        return "\n\n".join(section.render() for section in self.sections) + "\n"


@dataclass
class QuestionAnswer:
    answer: str
    relevant_records: str
    additional_context: str
    raw_text: str
    resource_ids: list[str] = field(default_factory=list)


def no_data_report() -> AnalysisReport:
    return AnalysisReport(sections=[AnalysisSection(tag=tag, content=text) for tag, text in NO_DATA_SECTIONS])


class AnalysisOrchestrator:
    """Runs topic analyses over a user's resources."""

    def __init__(
        self,
        index_manager: RetrievalIndexManager,
        generator: TextGenerator,
        topics: tuple[str, ...] | list[str] = DEFAULT_TOPICS,
        temperature: float | None = None,
    ):
        self._index_manager = index_manager
        self._generator = generator
        self._topics = tuple(topics)
        self._temperature = temperature if temperature is not None else settings.generation_temperature

    async def _collect_resources(
        self,
        user_id: str,
        question: str | None,
        mode: WearableMode | str | None,
    ) -> tuple[list[dict[str, Any]], bool]:
        if question:
            result = await self._index_manager.query(user_id, question, mode=mode)
            if result.resources:
                return result.resources, result.used_index
        return await self._index_manager.get_resources(user_id, mode), False

    async def _analyze_topic(self, topic: str, context: str, profile_info: str) -> AnalysisSection:
        prompt = TOPIC_PROMPT.format(profile_info=profile_info, context=context, topic=topic)
        try:
            text = await self._generator.generate(SYSTEM_PROMPT, prompt, self._temperature)
        except Exception as e:
            logger.warning(f"Analysis failed for topic '{topic}': {e}")
            return AnalysisSection(
                tag=topic_tag(topic),
                topic=topic,
                content=f"Error analyzing {topic}: {e}",
                failed=True,
            )
        return AnalysisSection(tag=topic_tag(topic), topic=topic, content=text)

    async def analyze_resources(
        self,
        resources: list[dict[str, Any]],
        profile_info: str = "",
        topics: list[str] | None = None,
    ) -> AnalysisReport:
        """Analyze an explicit resource set.

        An empty set returns the fixed no-data report without any
        generation call.
        """
        if not resources:
            return no_data_report()

        context = resources_to_context(resources)
        topics = list(topics or self._topics)
        sections = await asyncio.gather(
            *(self._analyze_topic(topic, context, profile_info) for topic in topics)
        )
        report = AnalysisReport(
            sections=[AnalysisSection(tag="OVERVIEW", content=OVERVIEW_TEXT), *sections],
            resource_count=len(resources),
        )
        if report.failed_topics:
            logger.warning(f"{len(report.failed_topics)} of {len(topics)} analysis topics failed")
        return report

    async def analyze_user(
        self,
        user_id: str,
        question: str | None = None,
        profile_info: str = "",
        topics: list[str] | None = None,
        mode: WearableMode | str | None = None,
    ) -> AnalysisReport:
        """Analyze a user's health record.

        Args:
            user_id: Owner of the resource collection.
            question: Optional focus; when given, resources come from an
                index query (falling back to the full set if it finds none).
            profile_info: Free-text profile prepended to every prompt.
            topics: Topic labels; defaults to the orchestrator's topics.
            mode: Wearable filtering mode.

        Returns:
            AnalysisReport with OVERVIEW plus one section per topic.
        """
        resources, used_index = await self._collect_resources(user_id, question, mode)
        report = await self.analyze_resources(resources, profile_info, topics)
        report.used_index = used_index
        logger.info(f"Analysis for user {user_id}: {report.resource_count} resources, used_index={used_index}")
        return report

    async def answer_question(
        self,
        user_id: str,
        question: str,
        profile_info: str = "",
        mode: WearableMode | str | None = None,
    ) -> QuestionAnswer:
        """Answer one question from the user's most relevant records.

        Raises:
            UpstreamGenerationError: If the generation call fails.
        """
        result = await self._index_manager.query(user_id, question, limit=QUESTION_RESOURCE_LIMIT, mode=mode)
        context = resources_to_context(result.resources) or NO_RECORDS_CONTEXT
        system = QUESTION_SYSTEM_PROMPT.format(profile_info=profile_info or "Not provided", context=context)
        text = await self._generator.generate(system, question, self._temperature)
        return QuestionAnswer(
            answer=extract_tag_content(text, "ANSWER") or text,
            relevant_records=extract_tag_content(text, "RELEVANT_RECORDS") or "",
            additional_context=extract_tag_content(text, "ADDITIONAL_CONTEXT") or "",
            raw_text=text,
            resource_ids=[f"{r.get('resourceType')}/{r.get('id')}" for r in result.resources],
        )
