from __future__ import annotations

_DEBUG_INSTRUCTIONS = (
    "Please provide:\n"
    "1. Root cause of the error\n"
    "2. Suggested fix\n"
    "3. Best practices to avoid similar errors\n\n"
    "Format your response as JSON with keys: cause, fix, bestPractices"
)

_REVIEW_INSTRUCTIONS = (
    "Please analyze the student's code and provide:\n"
    "1. Identify any syntax errors or bugs\n"
    "2. {comparison}\n"
    "3. Suggest improvements and best practices\n"
    "4. Provide encouragement and learning tips\n\n"
    "Keep the response concise (under 200 words), friendly, and educational."
)


def build_debug_prompt(error_message: str, code_snippet: str, language: str) -> str:
    return (
        "You are an expert code debugger. Analyze this error and provide a solution.\n\n"
        f"Language: {language}\n"
        f"Error: {error_message}\n\n"
        "Code:\n"
        f"```{language}\n{code_snippet}\n```\n\n"
        f"{_DEBUG_INSTRUCTIONS}"
    )


def build_suggestion_prompt(description: str, language: str) -> str:
    return f"Generate {language} code for: {description}. Provide clean, well-commented code."


def build_review_prompt(student_code: str, mentor_code: str | None = None) -> str:
    sections = ["You are an expert programming mentor helping a student debug their code."]
    if mentor_code:
        sections.append(
            "MENTOR'S REFERENCE CODE (Expected Implementation):\n"
            f"```\n{mentor_code}\n```"
        )
    sections.append(f"STUDENT'S CODE:\n```\n{student_code}\n```")
    comparison = "Compare with the mentor's approach" if mentor_code else "Review code structure and logic"
    sections.append(_REVIEW_INSTRUCTIONS.format(comparison=comparison))
    return "\n\n".join(sections)
