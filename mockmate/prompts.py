"""Prompt builders and locally synthesized interviewer lines."""

from typing import Any, Dict, List, Optional

from mockmate import config

INTERVIEWER_NAME = "Alex"

JOB_KIND_LABELS = {
    "special": "technical deep-dive interview",
    "behavior": "aptitude and HR interview",
}

# Appended to the turn prompt once 80% of the target duration has elapsed
WRAP_UP_HINT = "Time is nearly up: if the current topic is finished, wrap up the interview."

QUIZ_JSON_KEY = '"questions"'
ASSESSMENT_JSON_KEY = '"overallScore"'
ANALYSIS_JSON_KEY = '"matchScore"'


def opening_statement(interviewer_name: str, candidate_name: Optional[str] = None, position_name: Optional[str] = None) -> str:
    greeting = f"Hi {candidate_name}" if candidate_name else "Hi there"
    greeting += f", I'm {interviewer_name} and I'll be your interviewer today.\n\n"
    if position_name:
        greeting += f"I see you've applied for the {position_name} role.\n\n"
    greeting += (
        "Let's get started.\n\n"
        "First, please give a short introduction of yourself: your education and background, "
        "your work experience, and what you have achieved."
    )
    return greeting


def closing_statement(reason: str, candidate_name: Optional[str] = None) -> str:
    who = f", {candidate_name}" if candidate_name else ""
    if reason == "timeout":
        lead = f"We've reached the end of our scheduled time{who}, so let's stop here."
    elif reason == "user_ended":
        lead = f"Understood{who}, we'll end the interview here."
    else:
        lead = f"That's all for today{who}."
    return (
        f"{lead} Thank you for your answers. "
        "Your report will be ready shortly, and you can review every question with its reference answer."
    )


def format_history(history: List[Dict[str, Any]]) -> str:
    if not history:
        return "(The conversation has just started; this is the candidate's self-introduction.)"
    lines = []
    for idx, turn in enumerate(history, start=1):
        who = "Interviewer" if turn.get("role") == "interviewer" else "Candidate"
        lines.append(f"{idx}. {who}: {turn.get('text', '')}")
    return "\n\n".join(lines)


def build_interview_turn_prompt(ctx: Dict[str, Any]) -> str:
    job_kind = ctx.get("job_kind") or "special"
    elapsed = int(ctx.get("elapsed_minutes") or 0)
    target = int(ctx.get("target_duration") or 60)
    near_end = elapsed >= target * 0.8

    if job_kind == "special":
        strategy = (
            "### Strategy (technical depth)\n"
            "1. Opening (0-5 min): self-introduction and project overview\n"
            "2. Technical depth (5-40 min): dig into the stack and projects on the resume, one layer at a time\n"
            "3. Problem solving (40-50 min): scenario, algorithm or system design questions\n"
            "4. Closing (50-60 min): candidate questions, end of interview\n"
            "About 80% technical questions, 20% behavioral."
        )
    else:
        strategy = (
            "### Strategy (aptitude + HR)\n"
            "1. Opening (0-5 min): self-introduction\n"
            "2. HR (5-25 min): career plans, teamwork, stress handling, motivation\n"
            "3. Aptitude (25-40 min): logical reasoning, numeric and verbal questions with clear answers\n"
            "4. Closing (40-45 min): candidate questions, end of interview\n"
            "Keep the tone friendly and encouraging."
        )

    if near_end:
        ending = (
            f"{WRAP_UP_HINT}\n"
            "To end: start with a closing sentence, briefly summarize the candidate's performance, "
            f"explain the next steps, then output {config.END_INTERVIEW_FLAG} on its own line."
        )
    else:
        ending = f"Only end when the target duration is reached and the topic is complete, by outputting {config.END_INTERVIEW_FLAG}."

    return (
        f"# Role\nYou are an experienced interviewer running a {JOB_KIND_LABELS.get(job_kind, job_kind)}.\n\n"
        "# Interview\n"
        f"- Company: {ctx.get('company') or 'not provided'}\n"
        f"- Position: {ctx.get('position_name') or 'not provided'}\n"
        f"- Job description: {ctx.get('jd') or 'not provided'}\n"
        f"- Elapsed: {elapsed} minutes\n"
        f"- Target duration: {target} minutes\n\n"
        f"# Candidate resume\n{ctx.get('resume_content') or ''}\n\n"
        f"# Conversation so far\n{format_history(ctx.get('history') or [])}\n\n"
        f"# Task\n{strategy}\n\n"
        "Reply to the candidate's latest answer:\n"
        "- give a one or two sentence comment on the answer\n"
        "- then ask exactly one next question, specific and related to the resume or earlier answers\n"
        f"- after the question, write {config.REFERENCE_ANSWER_MARKER} and then a detailed reference answer\n\n"
        f"{ending}\n\nYour reply:"
    )


def build_quiz_prompt(ctx: Dict[str, Any]) -> str:
    count = int(ctx.get("question_count") or 10)
    return (
        "You are a senior technical recruiter with 15 years of experience.\n\n"
        f"Generate {count} likely interview questions for this candidate and job.\n\n"
        f"## Position\n{ctx.get('position_name') or ''} at {ctx.get('company') or 'an unnamed company'}"
        f"{' (' + ctx['salary_range'] + ')' if ctx.get('salary_range') else ''}\n\n"
        f"## Job description\n{ctx.get('jd') or ''}\n\n"
        f"## Resume\n{ctx.get('resume_content') or ''}\n\n"
        "## Output (strict JSON, no commentary)\n"
        "{\n"
        f'  {QUIZ_JSON_KEY}: [{{"question": "...", "answer": "...", "category": "...", "difficulty": "easy|medium|hard",\n'
        '    "tips": "how to approach the answer", "keywords": ["..."], "reasoning": "why this question is likely"}],\n'
        '  "summary": "one or two sentences of preparation advice"\n'
        "}"
    )


def build_analysis_prompt(ctx: Dict[str, Any]) -> str:
    """Resume against job description: match score, skill gaps and a radar of at least four dimensions."""
    return (
        "You are a senior technical recruiter. Compare the resume with the job description.\n\n"
        f"## Position\n{ctx.get('position_name') or 'not provided'}\n\n"
        f"## Job description\n{ctx.get('jd') or ''}\n\n"
        f"## Resume\n{ctx.get('resume_content') or ''}\n\n"
        "## Output (strict JSON, no commentary)\n"
        "{\n"
        f'  {ANALYSIS_JSON_KEY}: 0-100, "matchLevel": "excellent|good|fair|weak",\n'
        '  "matchedSkills": [{"skill": "...", "matched": true, "proficiency": "..."}],\n'
        '  "missingSkills": ["..."], "knowledgeGaps": ["..."],\n'
        '  "learningPriorities": [{"topic": "...", "priority": "high|medium|low", "reason": "..."}],\n'
        '  "radarData": [{"dimension": "...", "score": 0-100, "description": "..."}],\n'
        '  "strengths": ["..."], "weaknesses": ["..."], "interviewTips": ["..."]\n'
        "}\n"
        "radarData must cover at least 4 dimensions: technical skills, project experience, problem solving, soft skills."
    )


def build_assessment_prompt(ctx: Dict[str, Any]) -> str:
    qa_lines = []
    for idx, qa in enumerate(ctx.get("qa_list") or [], start=1):
        answer = qa.get("answer") or ""
        qa_lines.append(
            f"Question {idx}: {qa.get('question', '')}\n"
            f"Candidate answer: {answer}\n"
            f"Answer length: {len(answer)} chars\n"
            f"Reference answer: {qa.get('reference_answer') or 'none'}"
        )
    return (
        "You are an interview assessment expert. Score the candidate strictly on answer quality: "
        "short (<20 chars), off-topic or empty answers must score below 60. Compare each answer with its reference answer.\n\n"
        f"# Interview\n- Type: {JOB_KIND_LABELS.get(ctx.get('job_kind') or '', ctx.get('job_kind') or '')}\n"
        f"- Position: {ctx.get('position_name') or 'not provided'}\n\n"
        f"# Questions and answers\n{chr(10).join(qa_lines) or '(no answers)'}\n\n"
        "# Output (strict JSON, no commentary)\n"
        "{\n"
        f'  {ASSESSMENT_JSON_KEY}: 0-100, "overallLevel": "excellent|good|average|needs work", "overallComment": "...",\n'
        '  "radarData": [{"dimension": "...", "score": 0-100, "description": "..."}],\n'
        '  "strengths": ["..."], "weaknesses": ["..."],\n'
        '  "improvements": [{"category": "...", "suggestion": "...", "priority": "high|medium|low"}]\n'
        "}"
    )
