"""
Prompt Builder
==============

Instructions for single-shot phases (discovery, fix, improve, test,
review). Pipeline cycles use ``context_builder`` instead.
"""

from typing import Sequence

from autopilot.core.models import AutoUserPrompt, Finding
from autopilot.core.schemas import AutoSettings

FINDING_CATEGORIES = "bug|improvement|idea|performance|accessibility|security"

FINDINGS_FORMAT = "\n".join([
    "{",
    '  "findings": [',
    "    {",
    f'      "category": "{FINDING_CATEGORIES}",',
    '      "priority": "P0|P1|P2|P3",',
    '      "title": "Short title",',
    '      "description": "Details, including how to reproduce or how to improve it",',
    '      "file_path": "Related file path (optional)"',
    "    }",
    "  ]",
    "}",
])


def _finding_block(heading: str, finding: Finding) -> list[str]:
    return [
        f"[{heading}]",
        f"- ID: {finding.id}",
        f"- Category: {finding.category.value}",
        f"- Priority: {finding.priority.value}",
        f"- Title: {finding.title}",
        f"- Description: {finding.description}",
        f"- File: {finding.file_path or '(none)'}",
        f"- Previous attempts: {finding.retry_count} (max {finding.max_retries})",
    ]


class PromptBuilder:
    """Builds the instruction text for each single-shot phase."""

    def __init__(self, settings: AutoSettings, instructions: Sequence[AutoUserPrompt] = ()):
        self.settings = settings
        self.instructions = list(instructions)

    def _context(self, state_context: str) -> list[str]:
        """Project context, followed by instructions added during the session."""
        lines = ["[Project Context]", state_context, ""]
        if self.instructions:
            lines.append("[Additional Instructions]")
            lines += [f"- (cycle {p.added_at_cycle}) {p.content}" for p in self.instructions]
            lines.append("")
        return lines

    def build_discovery_prompt(self, state_context: str, existing: Sequence[Finding]) -> str:
        """Analyse the codebase and report findings as JSON."""
        if existing:
            existing_list = "\n".join(
                f"- [{f.id}] ({f.category.value}, {f.priority.value}) {f.title}"
                + (f" ({f.file_path})" if f.file_path else "")
                for f in existing
            )
        else:
            existing_list = "(none)"

        return "\n".join([
            "You are the code quality analyst for this project.",
            "",
            *self._context(state_context),
            "[Task]",
            "Analyse the codebase and look for problems and improvements in these areas:",
            "1. Bugs (missing error handling, edge cases)",
            "2. Missing test coverage",
            "3. Accessibility (a11y) problems",
            "4. Performance improvements",
            "5. Security vulnerabilities",
            "6. UX improvement ideas",
            "",
            "[Output Format]",
            "Output ONLY JSON in the following format:",
            FINDINGS_FORMAT,
            "",
            "[Already Reported (do not repeat)]",
            existing_list,
        ])

    def build_fix_prompt(self, state_context: str, finding: Finding) -> str:
        return "\n".join([
            "You are a senior developer on this project.",
            "",
            *self._context(state_context),
            *_finding_block("Problem to Fix", finding),
            "",
            "[Task]",
            "1. Fix the problem above.",
            "2. Update related tests if there are any.",
            "3. Add new tests where needed.",
            "4. Keep the change minimal; only touch code directly related to the problem.",
            "",
            "[Constraints]",
            "- Do not break existing functionality.",
            "- Do not refactor unrelated code.",
            "- Do not delete files.",
        ])

    def build_improve_prompt(self, state_context: str, finding: Finding) -> str:
        return "\n".join([
            "You are a senior developer on this project.",
            "",
            *self._context(state_context),
            *_finding_block("Item to Improve", finding),
            "",
            "[Task]",
            "1. Implement the improvement above.",
            "2. Add or update tests covering the improvement.",
            "3. Keep the scope minimal; only touch code directly related to this item.",
            "",
            "[Constraints]",
            "- Do not break existing functionality.",
            "- Do not refactor beyond the scope of this item.",
            "- Do not delete files.",
            "- Confirm with tests that behaviour is preserved where it should be.",
        ])

    def build_test_prompt(self, state_context: str) -> str:
        return "\n".join([
            *self._context(state_context),
            "[Task]",
            "Run the tests with the following command and analyse the result:",
            "",
            self.settings.test_command,
            "",
            "[Output Format]",
            "Output ONLY JSON in the following format:",
            "{",
            '  "summary": {',
            '    "total": number,',
            '    "passed": number,',
            '    "failed": number,',
            '    "skipped": number',
            "  },",
            '  "failures": [',
            "    {",
            '      "test_name": "Test name",',
            '      "file_path": "Test file path",',
            '      "error_message": "Error message",',
            '      "category": "bug|regression|flaky",',
            '      "priority": "P0|P1|P2",',
            '      "suggested_fix": "Suggested direction for a fix"',
            "    }",
            "  ],",
            '  "new_findings": [',
            "    {",
            f'      "category": "{FINDING_CATEGORIES}",',
            '      "priority": "P0|P1|P2|P3",',
            '      "title": "Short title",',
            '      "description": "Details",',
            '      "file_path": "Related file path (optional)"',
            "    }",
            "  ]",
            "}",
        ])

    def build_review_prompt(self, state_context: str, recent_diff: str) -> str:
        return "\n".join([
            "You are the senior code reviewer for this project.",
            "",
            *self._context(state_context),
            "[Task]",
            "Review the recent changes below.",
            "",
            "[Changes (git diff)]",
            recent_diff or "(no committed changes since the last checkpoint)",
            "",
            "[Focus]",
            "1. Code quality: readability, consistency, duplication",
            "2. Likely bugs: edge cases, error handling",
            "3. Performance: wasted work, possible leaks",
            "4. Security: input validation, XSS, injection",
            "",
            "[Output Format]",
            "Output ONLY JSON in the following format:",
            FINDINGS_FORMAT,
        ])
