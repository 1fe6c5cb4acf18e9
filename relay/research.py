"""Deep research: a fixed five-stage chain of text-generation calls.

analysis -> decomposition -> sub-research -> validation -> synthesis. Each stage
consumes the full output of the previous one; sub-questions run one at a time so
partial answers reach the caller in order.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import List

from .llm import GenerationOptions, TextProvider
from .schemas import (
    ChunkEvent,
    ResearchCompleteEvent,
    ResearchStep,
    ResearchStepEvent,
    StatusEvent,
)
from .transport import EventStream, pace


logger = logging.getLogger("uvicorn.error")

STEP_EMOJIS = {
    "thinking": "🤔",
    "analysis": "🔍",
    "synthesis": "🔗",
    "conclusion": "✅",
}
_NUMBERED_LINE_RE = re.compile(r"^\d+\.\s*")

ANALYSIS_MAX_TOKENS = 500
DECOMPOSE_MAX_TOKENS = 400
SUB_RESEARCH_MAX_TOKENS = 800
VALIDATION_MAX_TOKENS = 600
SYNTHESIS_MAX_TOKENS = 1500
VALIDATION_TEMPERATURE_FACTOR = 0.8


def calculate_confidence(steps: List[ResearchStep]) -> int:
    confidence = min(len(steps) * 20, 80)
    if any(step.type == "synthesis" for step in steps):
        confidence += 10
    if any(step.type == "conclusion" for step in steps):
        confidence += 10
    return min(confidence, 95)


def parse_sub_questions(response: str, question: str) -> List[str]:
    """Numbered lines of ``response``; the question itself when there are none."""
    sub_questions = []
    for line in response.split("\n"):
        trimmed = line.strip()
        if _NUMBERED_LINE_RE.match(trimmed):
            text = _NUMBERED_LINE_RE.sub("", trimmed, count=1).strip()
            if text:
                sub_questions.append(text)
    if not sub_questions:
        logger.warning("Research decomposition yielded no numbered sub-questions; using the question itself")
        return [question]
    return sub_questions


@dataclass
class ResearchContext:
    question: str
    steps: List[ResearchStep] = field(default_factory=list)
    confidence: int = 0
    confidence_trail: List[int] = field(default_factory=list)

    def record(self, step_type: str, title: str, content: str) -> None:
        self.steps.append(ResearchStep(type=step_type, title=title, content=content))
        self.confidence = calculate_confidence(self.steps)
        self.confidence_trail.append(self.confidence)


@dataclass
class ResearchResult:
    content: str
    context: ResearchContext
    sub_questions: List[str]
    sub_answers: List[str]


def format_research_response(context: ResearchContext, synthesis: str) -> str:
    steps = "\n\n---\n\n".join(f"**{step.title}**\n{step.content}" for step in context.steps)
    return (
        "# Deep Research Analysis\n\n"
        f"## Question\n{context.question}\n\n"
        f"## Research Process\n\n{steps}\n\n"
        "---\n\n"
        f"## Final Synthesis\n\n{synthesis}\n\n"
        "---\n\n"
        f"**Confidence Level**: {context.confidence}%\n"
        f"**Research Depth**: {len(context.steps)} analytical steps\n"
        "**Methodology**: Chain-of-thought reasoning with cross-validation"
    )


def analysis_prompt(question: str) -> str:
    return f"""Analyze this question in depth:
"{question}"

Provide:
1. What type of question this is (factual, analytical, creative, etc.)
2. Key concepts and terms involved
3. Potential complexities or nuances
4. What kind of answer would be most helpful"""


def decomposition_prompt(question: str, understanding: str) -> str:
    return f"""Based on this question: "{question}"
And this analysis: {understanding}

Generate 3-5 specific sub-questions that, when answered, would provide a comprehensive response to the main question.
Format as a numbered list."""


def sub_research_prompt(sub_question: str) -> str:
    return f"""Research and provide a detailed answer to: "{sub_question}"

Include:
- Key facts and evidence
- Multiple perspectives if relevant
- Any important caveats or limitations
- Be thorough but concise"""


def validation_prompt(question: str, sub_answers: List[str]) -> str:
    findings = "\n\n".join(f"{i}. {answer}" for i, answer in enumerate(sub_answers, start=1))
    return f"""Cross-reference and validate these research findings for the question: "{question}"

Findings:
{findings}

Identify:
1. Consistencies across findings
2. Any contradictions or conflicts
3. Gaps that still need addressing
4. Overall reliability assessment"""


def synthesis_prompt(question: str, sub_answers: List[str], validation: str) -> str:
    components = "\n\n".join(f"Component {i}: {answer}" for i, answer in enumerate(sub_answers, start=1))
    return f"""Synthesize a comprehensive answer to: "{question}"

Based on these researched components:
{components}

Validation notes:
{validation}

Provide:
1. A clear, well-structured answer
2. Key insights and takeaways
3. Confidence level in the answer
4. Any important limitations or areas for further research"""


class DeepResearch:
    def __init__(
        self,
        provider: TextProvider,
        max_steps: int = 5,
        step_delay_ms: float = 500,
        answer_delay_ms: float = 100,
    ):
        self.provider = provider
        self.max_steps = max_steps
        self.step_delay_ms = step_delay_ms
        self.answer_delay_ms = answer_delay_ms

    async def _call(self, prompt: str, model: str, temperature: float, max_tokens: int) -> str:
        options = GenerationOptions(model=model, temperature=temperature, max_tokens=max_tokens)
        return await self.provider.complete(prompt, options)

    async def _send_step(self, transport: EventStream, step_type: str, message: str) -> None:
        emoji = STEP_EMOJIS.get(step_type, "📋")
        await transport.send(ResearchStepEvent(step_type=step_type, message=f"{emoji} {message}"))
        await pace(self.step_delay_ms)

    def _stopped(
        self, context: ResearchContext, sub_questions: List[str], sub_answers: List[str]
    ) -> ResearchResult:
        logger.info("Research for %.60s stopped: consumer closed", context.question)
        return ResearchResult(
            content=format_research_response(context, ""),
            context=context,
            sub_questions=sub_questions,
            sub_answers=sub_answers,
        )

    async def perform_research(
        self,
        question: str,
        transport: EventStream,
        model: str,
        temperature: float = 0.7,
    ) -> ResearchResult:
        context = ResearchContext(question=question)
        sub_questions: List[str] = []
        sub_answers: List[str] = []
        await transport.send(StatusEvent(message="🔬 Starting deep research analysis..."))

        await self._send_step(transport, "thinking", "Understanding the Question")
        if transport.closed:
            return self._stopped(context, sub_questions, sub_answers)
        understanding = await self._call(analysis_prompt(question), model, temperature, ANALYSIS_MAX_TOKENS)
        context.record("thinking", "Question Analysis", understanding)

        await self._send_step(transport, "analysis", "Breaking down into components")
        if transport.closed:
            return self._stopped(context, sub_questions, sub_answers)
        decomposition = await self._call(
            decomposition_prompt(question, understanding), model, temperature, DECOMPOSE_MAX_TOKENS
        )
        sub_questions = parse_sub_questions(decomposition, question)
        context.record("analysis", "Sub-questions", "\n".join(sub_questions))

        await self._send_step(transport, "analysis", "Researching each component")
        for sub_question in sub_questions[: self.max_steps]:
            if transport.closed:
                break
            await transport.send(StatusEvent(message=f"📊 Analyzing: {sub_question[:50]}..."))
            answer = await self._call(sub_research_prompt(sub_question), model, temperature, SUB_RESEARCH_MAX_TOKENS)
            sub_answers.append(answer)
            await transport.send(ChunkEvent(content=f"\n\n### {sub_question}\n{answer}\n"))
            await pace(self.answer_delay_ms)

        if transport.closed:
            return self._stopped(context, sub_questions, sub_answers)

        await self._send_step(transport, "synthesis", "Cross-referencing findings")
        if transport.closed:
            return self._stopped(context, sub_questions, sub_answers)
        validation = await self._call(
            validation_prompt(question, sub_answers),
            model,
            temperature * VALIDATION_TEMPERATURE_FACTOR,
            VALIDATION_MAX_TOKENS,
        )
        context.record("synthesis", "Validation", validation)

        await self._send_step(transport, "conclusion", "Synthesizing final analysis")
        if transport.closed:
            return self._stopped(context, sub_questions, sub_answers)
        synthesis = await self._call(
            synthesis_prompt(question, sub_answers, validation), model, temperature, SYNTHESIS_MAX_TOKENS
        )
        context.record("conclusion", "Final Synthesis", synthesis)

        formatted = format_research_response(context, synthesis)
        await transport.send(
            ResearchCompleteEvent(content=formatted, steps=list(context.steps), confidence=context.confidence)
        )
        return ResearchResult(
            content=formatted,
            context=context,
            sub_questions=sub_questions,
            sub_answers=sub_answers,
        )
