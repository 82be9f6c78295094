"""Deterministic local results used when a tool call fails.

Both builders are pure: no I/O, no collaborators, identical output for identical input.
"""

from __future__ import annotations

from .models import (
    DocumentationJson,
    DocumentationResult,
    ReviewIssue,
    ReviewResult,
    ReviewSeverity,
)

DEFAULT_MAX_CHARS_PER_FILE = 30_000

_UNRESOLVED_MARKERS = ("todo", "fixme")
_SECRET_MARKERS = ("password", "apikey", "api_key", "token")

_RETRY_SUGGESTION = "Address the findings and re-run the review once the tool is available."


def local_review_fallback(
    file_name: str,
    data: str,
    max_chars: int = DEFAULT_MAX_CHARS_PER_FILE,
) -> ReviewResult:
    issues: list[ReviewIssue] = []
    content = data or ""
    lowered = content.lower()

    if not content.strip():
        issues.append(
            ReviewIssue(
                severity=ReviewSeverity.warning,
                title="Empty file content",
                details="The file was submitted empty, so it cannot be reviewed.",
            )
        )
    if len(content) >= max_chars:
        issues.append(
            ReviewIssue(
                severity=ReviewSeverity.info,
                title="File content was truncated",
                details=f"At most {max_chars} characters were used for the review.",
            )
        )
    if any(marker in lowered for marker in _UNRESOLVED_MARKERS):
        issues.append(
            ReviewIssue(
                severity=ReviewSeverity.info,
                title="TODO/FIXME markers found",
                details="The code contains TODO/FIXME markers; check that they are expected.",
            )
        )
    if any(marker in lowered for marker in _SECRET_MARKERS):
        issues.append(
            ReviewIssue(
                severity=ReviewSeverity.warning,
                title="Potential secrets in code",
                details=(
                    "Words like password/apiKey/token were found. Make sure secrets are not "
                    "hardcoded and are loaded from the environment."
                ),
            )
        )

    return ReviewResult(
        summary=(
            f"Local fallback code review for '{file_name}'. "
            "The review tool was unavailable or returned an error."
        ),
        issues=issues,
        suggestions=[_RETRY_SUGGESTION] if issues else [],
    )


def local_docs_fallback(component_name: str, description: str) -> DocumentationResult:
    body = description if description and description.strip() else "No description provided."
    markdown = (
        f"# {component_name}\n"
        "\n"
        "_Local documentation (the documentation tool was unavailable or returned an error)._\n"
        "\n"
        "## Description\n"
        "\n"
        f"{body}\n"
        "\n"
        "## Sections (template)\n"
        "\n"
        "- Overview\n"
        "- Responsibilities\n"
        "- Usage\n"
        "- Dependencies\n"
        "- Notes\n"
    )
    uml = (
        "@startuml\n"
        f"class {component_name} {{\n"
        "    + Handle()\n"
        "}\n"
        "@enduml\n"
    )
    return DocumentationResult(
        markdown=markdown,
        uml_plant_uml=uml,
        uml_plant_uml_image_base64=None,
        structured_json=DocumentationJson(component_name=component_name, description=description or ""),
    )
