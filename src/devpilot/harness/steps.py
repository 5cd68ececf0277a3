"""Built-in step catalogs per mode and the prompt rendered for each step."""

from __future__ import annotations

from collections.abc import Iterable

from devpilot.harness.models import Mode, Step, WorkflowRun

ANALYZE_STEPS: tuple[Step, ...] = (
    Step(
        id="01_REPOSITORY_ANALYSIS",
        description="Map repository structure, languages and hotspots",
        output="docs/analysis/repository_analysis.md",
    ),
    Step(
        id="02_ARCHITECTURE_ANALYSIS",
        dependencies=frozenset({"01_REPOSITORY_ANALYSIS"}),
        description="Describe architecture patterns and component boundaries",
        output="docs/analysis/architecture_analysis.md",
    ),
    Step(
        id="03_TEST_ANALYSIS",
        dependencies=frozenset({"01_REPOSITORY_ANALYSIS"}),
        description="Assess test coverage and test quality",
        output="docs/analysis/test_analysis.md",
    ),
    Step(
        id="04_FUNCTIONALITY_ANALYSIS",
        dependencies=frozenset({"01_REPOSITORY_ANALYSIS", "02_ARCHITECTURE_ANALYSIS"}),
        description="Map features to the code that implements them",
        output="docs/analysis/functionality_analysis.md",
    ),
    Step(
        id="05_DOCUMENTATION_ANALYSIS",
        dependencies=frozenset({"01_REPOSITORY_ANALYSIS", "04_FUNCTIONALITY_ANALYSIS"}),
        description="Find documentation gaps",
        output="docs/analysis/documentation_analysis.md",
    ),
    Step(
        id="06_STATIC_ANALYSIS",
        dependencies=frozenset({"01_REPOSITORY_ANALYSIS"}),
        description="Run and summarize static analysis tools",
        output="docs/analysis/static_analysis.md",
    ),
    Step(
        id="07_REFACTORING_RECOMMENDATIONS",
        dependencies=frozenset(
            {
                "01_REPOSITORY_ANALYSIS",
                "02_ARCHITECTURE_ANALYSIS",
                "04_FUNCTIONALITY_ANALYSIS",
                "06_STATIC_ANALYSIS",
            },
        ),
        description="Prioritized refactoring recommendations",
        output="docs/analysis/refactoring_recommendations.md",
    ),
)

_EXECUTE_CHAIN: tuple[tuple[str, str, str, bool], ...] = (
    ("00_PRD", "Generate Product Requirements Document", "docs/prd.md", False),
    ("01_NFRS", "Define Non-Functional Requirements", "docs/nfrs.md", False),
    ("02_ARCHITECTURE", "Design System Architecture", "docs/architecture.md", False),
    (
        "02A_ARCH_GATE_QUESTIONS",
        "Architecture Gate Questions",
        "docs/arch_gate_questions.md",
        True,
    ),
    ("03_ADR_FACTORY", "Generate Architecture Decision Records", "docs/adr/", False),
    (
        "04_DOMAIN_DECOMPOSITION",
        "Decompose Domain into Components",
        "docs/domain_decomposition.md",
        False,
    ),
    ("05_API_DESIGN", "Design APIs and Interfaces", "docs/api_design.md", False),
    ("06_DATA_MODEL", "Design Data Model", "docs/data_model.md", True),
    ("07_SECURITY_REVIEW", "Security Review and Threat Model", "docs/security_review.md", True),
    (
        "08_PERFORMANCE_REVIEW",
        "Performance Review and Optimization",
        "docs/performance_review.md",
        True,
    ),
    ("09_RELIABILITY_REVIEW", "Reliability Review and SLOs", "docs/reliability_review.md", True),
    ("10_TESTING_STRATEGY", "Define Testing Strategy", "docs/testing_strategy.md", False),
    ("11_STATIC_ANALYSIS", "Static Code Analysis", "docs/static_analysis.md", False),
    (
        "12_OBSERVABILITY_SLOS",
        "Define Observability and SLOs",
        "docs/observability_slos.md",
        True,
    ),
    ("13_DELIVERY_ROLLOUT", "Plan Delivery and Rollout", "docs/delivery_rollout.md", True),
    ("14_DOCS_PORTAL", "Documentation Portal", "docs/docs_portal.md", False),
    ("15_POST_RELEASE", "Post-Release Review", "docs/post_release.md", False),
    ("16_IMPLEMENTATION", "Execute Implementation Tasks", "implementation_log.md", False),
)


def _linear_chain(rows: Iterable[tuple[str, str, str, bool]]) -> tuple[Step, ...]:
    steps: list[Step] = []
    previous: str | None = None
    for step_id, description, output, gate in rows:
        steps.append(
            Step(
                id=step_id,
                dependencies=frozenset({previous}) if previous else frozenset(),
                requires_gate_approval=gate,
                description=description,
                output=output,
            ),
        )
        previous = step_id
    return tuple(steps)


EXECUTE_STEPS: tuple[Step, ...] = _linear_chain(_EXECUTE_CHAIN)


def catalog_for(mode: Mode) -> tuple[Step, ...]:
    if mode is Mode.ANALYZE:
        return ANALYZE_STEPS
    return EXECUTE_STEPS


def validate_catalog(steps: Iterable[Step]) -> None:
    """Reject duplicate ids, unknown dependencies and dependency cycles."""

    by_id: dict[str, Step] = {}
    for step in steps:
        if step.id in by_id:
            raise ValueError(f"Duplicate step id: {step.id!r}")
        by_id[step.id] = step
    for step in by_id.values():
        unknown = sorted(step.dependencies - by_id.keys())
        if unknown:
            raise ValueError(f"Step {step.id!r} depends on unknown steps: {', '.join(unknown)}")

    visiting: set[str] = set()
    done: set[str] = set()

    def visit(step_id: str, path: tuple[str, ...]) -> None:
        if step_id in done:
            return
        if step_id in visiting:
            cycle = " -> ".join((*path, step_id))
            raise ValueError(f"Dependency cycle in step catalog: {cycle}")
        visiting.add(step_id)
        for dependency in sorted(by_id[step_id].dependencies):
            visit(dependency, (*path, step_id))
        visiting.discard(step_id)
        done.add(step_id)

    for step_id in by_id:
        visit(step_id, ())


def build_step_prompt(step: Step, run: WorkflowRun) -> str:
    """Render the provider prompt for one step, merging collected answers."""

    lines = [f"# Step {step.id} ({run.mode.value})", ""]
    if step.description:
        lines.extend([step.description, ""])
    lines.append(f"Project directory: {run.project_dir}")
    if step.output:
        lines.append(f"Write the result to: {step.output}")
    if run.completed_steps:
        lines.append(f"Completed steps: {', '.join(run.completed_steps)}")

    answers = {
        key: value
        for key, value in run.user_answers.items()
        if not key.startswith(("gate:", "review:"))
    }
    if answers:
        lines.extend(["", "## Answers from the user"])
        lines.extend(f"- {key}: {value}" for key, value in sorted(answers.items()))

    review = run.user_answers.get(f"review:{step.id}")
    if review:
        lines.extend(["", "## Reviewer feedback on the previous attempt", review])

    lines.extend(
        [
            "",
            "If you need information from the user, write a heading 'Questions for you:' "
            "followed by numbered questions and stop.",
        ],
    )
    return "\n".join(lines) + "\n"
