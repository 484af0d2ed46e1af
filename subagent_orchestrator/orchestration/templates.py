"""
Predefined agent profiles.
"""

from typing import Any, Dict, List

from ..models.core import AgentRole, AgentSpec, AgentSpecialization, Priority
from ..models.errors import NotFoundError


AGENT_TEMPLATES: Dict[str, AgentSpec] = {
    "fullstack_dev": AgentSpec(
        name="Full-Stack Developer",
        description="Complete application development with frontend and backend",
        role=AgentRole.SPECIALIST,
        specializations={AgentSpecialization.FRONTEND, AgentSpecialization.BACKEND},
        capabilities={"react", "node.js", "databases", "apis", "testing"},
        max_concurrent_tasks=3,
        priority=Priority.HIGH
    ),
    "code_reviewer": AgentSpec(
        name="Code Reviewer",
        description="Code quality analysis and security review",
        role=AgentRole.SPECIALIST,
        specializations={AgentSpecialization.SECURITY, AgentSpecialization.ARCHITECTURE},
        capabilities={"code-review", "security-audit", "best-practices", "refactoring"},
        max_concurrent_tasks=5,
        priority=Priority.MEDIUM
    ),
    "test_engineer": AgentSpec(
        name="Test Engineer",
        description="Test automation and quality assurance",
        role=AgentRole.SPECIALIST,
        specializations={AgentSpecialization.TESTING},
        capabilities={"unit-testing", "integration-testing", "e2e-testing", "performance-testing"},
        max_concurrent_tasks=2,
        priority=Priority.HIGH
    ),
    "devops_specialist": AgentSpec(
        name="DevOps Specialist",
        description="Deployment, CI/CD, and infrastructure management",
        role=AgentRole.SPECIALIST,
        specializations={AgentSpecialization.DEVOPS},
        capabilities={"docker", "kubernetes", "ci-cd", "monitoring", "infrastructure"},
        max_concurrent_tasks=2,
        priority=Priority.MEDIUM
    ),
    "ui_designer": AgentSpec(
        name="UI/UX Designer",
        description="User interface and experience design",
        role=AgentRole.SPECIALIST,
        specializations={AgentSpecialization.UI_UX},
        capabilities={"design-systems", "user-research", "prototyping", "accessibility"},
        max_concurrent_tasks=3,
        priority=Priority.MEDIUM
    ),
}


def list_templates() -> List[str]:
    return sorted(AGENT_TEMPLATES)


def build_agent_spec(template_name: str, **overrides: Any) -> Dict[str, Any]:
    """
    Build a registration payload from a template.

    Args:
        template_name: Key in ``AGENT_TEMPLATES``
        **overrides: Fields replacing the template's values (e.g. ``name``, ``id``)

    Returns:
        Dict suitable for ``AgentRegistry.register``

    Raises:
        NotFoundError: If the template does not exist
    """
    template = AGENT_TEMPLATES.get(template_name)
    if template is None:
        raise NotFoundError(f"Agent template not found: {template_name}", template=template_name)

    data = template.model_dump()
    data.update({key: value for key, value in overrides.items() if value is not None})
    return data
