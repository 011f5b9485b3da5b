from __future__ import annotations

# Default charters per capability tag. Any other tag can be bound as well; it
# simply runs without a charter line.
ROLE_CHARTERS: dict[str, str] = {
    "analyst": "Turn the task description into testable requirements and acceptance criteria.",
    "planner": "Produce an implementation plan: interfaces, ordered steps, risks.",
    "critic": "Review the plan adversarially. Answer APPROVED or REJECTED with reasons.",
    "scout": "Map the code the plan touches: files, conventions, reusable pieces.",
    "builder": "Implement the approved plan. Fix findings handed back by reviewers.",
    "tester": "Build and test the change. Report failures with CRITICAL/HIGH/MEDIUM/LOW labels.",
    "security-auditor": "Audit the change for security issues and rate each finding.",
    "ux-reviewer": "Review usability and accessibility of user-facing changes.",
    "performance-reviewer": "Look for performance regressions and rate each finding.",
    "quality-reviewer": "Review code quality and maintainability and rate each finding.",
    "visual-reviewer": "Check the visual presentation of the change before commit.",
    "committer": "Record the task artifacts as one durable change.",
    "documenter": "Update documentation for the committed change.",
    "observer": "Read the iteration report and suggest at most one configuration change.",
    "lead": "Make the final ACCEPT or REJECT call on an escalated plan.",
}


def charter_for(role: str) -> str:
    return ROLE_CHARTERS.get(role, "")
