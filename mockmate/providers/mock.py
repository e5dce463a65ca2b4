import asyncio
import json
import re
from typing import AsyncIterator, Optional

from .base import GenerationClient
from mockmate import config, prompts


class MockGenerationClient(GenerationClient):
    """Deterministic offline backend that follows the interview output protocol."""

    provider_name: str = "mock"

    def __init__(self, model: Optional[str] = None, delay_s: float = 0.01):
        super().__init__(model=model or "mock-gen-1")
        self._delay_s = delay_s

    async def stream_chat(
        self,
        prompt: str,
        system: Optional[str] = None,
        request_id: Optional[str] = None,
        json_mode: bool = False,
    ) -> AsyncIterator[str]:
        text = _respond(prompt or "")
        # Stream in small chunks deterministically
        for token in _chunk_text(text, size=6):
            yield token
            if self._delay_s:
                await asyncio.sleep(self._delay_s)


def _chunk_text(s: str, size: int = 6):
    for i in range(0, len(s), size):
        yield s[i : i + size]


def _respond(prompt: str) -> str:
    if prompts.ASSESSMENT_JSON_KEY in prompt:
        answered = prompt.count("Candidate answer:")
        return json.dumps({
            "overallScore": 70 if answered else 30,
            "overallLevel": "average" if answered else "needs work",
            "overallComment": f"Placeholder assessment over {answered} answers.",
            "radarData": [],
            "strengths": [],
            "weaknesses": [],
            "improvements": [],
        })
    if prompts.ANALYSIS_JSON_KEY in prompt:
        return json.dumps({
            "matchScore": 60,
            "matchLevel": "fair",
            "matchedSkills": [],
            "missingSkills": [],
            "knowledgeGaps": [],
            "learningPriorities": [],
            "radarData": [
                {"dimension": d, "score": 60, "description": "Placeholder."}
                for d in ("technical skills", "project experience", "problem solving", "soft skills")
            ],
            "strengths": [],
            "weaknesses": [],
            "interviewTips": ["Prepare two project stories."],
        })
    if prompts.QUIZ_JSON_KEY in prompt:
        m = re.search(r"Generate (\d+) likely interview questions", prompt)
        count = int(m.group(1)) if m else 3
        questions = [
            {
                "question": f"Placeholder question {i}?",
                "answer": f"Placeholder answer {i}.",
                "category": "general",
                "difficulty": "medium",
                "tips": "Lead with the outcome.",
                "keywords": [],
                "reasoning": "Common for this role.",
            }
            for i in range(1, count + 1)
        ]
        return json.dumps({"questions": questions, "summary": "Review the fundamentals."})
    if prompts.WRAP_UP_HINT in prompt:
        return (
            "Thanks, that's all for today. We'll get back to you within a few days.\n"
            f"{config.END_INTERVIEW_FLAG}"
        )
    asked = prompt.count("Interviewer:")
    return (
        f"Thanks for the answer. Question {asked}: can you walk me through a recent technical decision you made?\n\n"
        f"{config.REFERENCE_ANSWER_MARKER}\n"
        "A strong answer states the context, the options considered, the trade-offs and the measured outcome."
    )
