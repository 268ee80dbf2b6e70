"""
Agent capability registry.

Enumerates the agents the router knows about, their domains and
capability tags. The adaptive scorer falls back to this registry for
candidates when no performance history exists yet.

Usage:
    from routeguard.capability_registry import get_capability_registry

    registry = get_capability_registry()
    registry.default_candidates(complexity=45)   # ['code-reviewer', 'test-automator']
    registry.agents_for_domains(["security", "testing"], limit=2)
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Any, Optional


class AgentStatus:
    STABLE = "stable"
    BETA = "beta"
    DEPRECATED = "deprecated"


@dataclass
class AgentCapability:
    """An agent that can be routed to, with the domains it covers."""

    agent_id: str
    description: str
    domains: list[str] = field(default_factory=list)
    capabilities: list[str] = field(default_factory=list)
    avg_tokens: int = 5000
    status: str = AgentStatus.STABLE

    @property
    def routable(self) -> bool:
        return self.status != AgentStatus.DEPRECATED

    def to_dict(self) -> dict[str, Any]:
        return {
            "agent_id": self.agent_id,
            "description": self.description,
            "domains": self.domains,
            "capabilities": self.capabilities,
            "avg_tokens": self.avg_tokens,
            "status": self.status,
            "routable": self.routable,
        }


# =============================================================================
# Domain vocabulary
# =============================================================================

# Keywords used by the lexical complexity analyzer to detect task domains.
DOMAIN_KEYWORDS: dict[str, list[str]] = {
    "security": [
        "security",
        "vulnerability",
        "auth",
        "encryption",
        "xss",
        "injection",
        "owasp",
        "secret",
    ],
    "performance": [
        "performance",
        "latency",
        "optimize",
        "optimization",
        "slow",
        "memory",
        "profiling",
        "throughput",
    ],
    "testing": ["test", "testing", "coverage", "unit", "integration", "e2e", "mock"],
    "review": ["review", "code quality", "lint", "style", "best practice", "readability"],
    "architecture": [
        "architecture",
        "design",
        "microservice",
        "scalability",
        "pattern",
        "distributed",
    ],
    "debugging": ["bug", "debug", "error", "crash", "exception", "stack trace", "fix"],
}


# =============================================================================
# Default agents
# =============================================================================

CODE_REVIEWER = AgentCapability(
    agent_id="code-reviewer",
    description="Reviews changes for correctness, readability and maintainability",
    domains=["review"],
    capabilities=["code quality", "best practice", "readability"],
    avg_tokens=4000,
)

TEST_AUTOMATOR = AgentCapability(
    agent_id="test-automator",
    description="Writes and repairs unit, integration and end-to-end tests",
    domains=["testing"],
    capabilities=["unit", "integration", "e2e", "coverage"],
    avg_tokens=6000,
)

SECURITY_AUDITOR = AgentCapability(
    agent_id="security-auditor",
    description="Audits code for vulnerabilities and insecure configuration",
    domains=["security"],
    capabilities=["vulnerability", "owasp", "encryption", "auth"],
    avg_tokens=7000,
)

PERFORMANCE_ENGINEER = AgentCapability(
    agent_id="performance-engineer",
    description="Profiles hot paths and proposes optimizations",
    domains=["performance"],
    capabilities=["profiling", "latency", "throughput"],
    avg_tokens=6000,
)

ARCHITECT_REVIEW = AgentCapability(
    agent_id="architect-review",
    description="Evaluates system design, boundaries and scalability",
    domains=["architecture"],
    capabilities=["microservice", "scalability", "distributed"],
    avg_tokens=8000,
)

DEBUGGER = AgentCapability(
    agent_id="debugger",
    description="Reproduces and fixes failures from errors and stack traces",
    domains=["debugging"],
    capabilities=["bug", "stack trace", "crash"],
    avg_tokens=5000,
)

GENERAL_PURPOSE = AgentCapability(
    agent_id="general-purpose",
    description="Handles simple single-step tasks",
    domains=[],
    capabilities=[],
    avg_tokens=3000,
)

# Cold-start candidates by complexity band: simple, moderate, complex.
COLD_START_CANDIDATES: tuple[list[str], list[str], list[str]] = (
    ["code-reviewer"],
    ["code-reviewer", "test-automator"],
    ["code-reviewer", "test-automator", "security-auditor"],
)


# =============================================================================
# Capability Registry
# =============================================================================


class CapabilityRegistry:
    """Registry of routable agents (thread-safe)."""

    def __init__(
        self,
        complexity_simple: int = 30,
        complexity_complex: int = 60,
        load_defaults: bool = True,
    ) -> None:
        self._agents: dict[str, AgentCapability] = {}
        self._lock = threading.Lock()
        self.complexity_simple = complexity_simple
        self.complexity_complex = complexity_complex
        if load_defaults:
            self._load_default_agents()

    def _load_default_agents(self) -> None:
        defaults = [
            CODE_REVIEWER,
            TEST_AUTOMATOR,
            SECURITY_AUDITOR,
            PERFORMANCE_ENGINEER,
            ARCHITECT_REVIEW,
            DEBUGGER,
            GENERAL_PURPOSE,
        ]
        for agent in defaults:
            self._agents[agent.agent_id] = agent

    def register(self, agent: AgentCapability) -> None:
        """Register or replace an agent."""
        with self._lock:
            self._agents[agent.agent_id] = agent

    def unregister(self, agent_id: str) -> bool:
        with self._lock:
            return self._agents.pop(agent_id, None) is not None

    def get(self, agent_id: str) -> AgentCapability | None:
        with self._lock:
            return self._agents.get(agent_id)

    def all(self) -> list[AgentCapability]:
        with self._lock:
            return list(self._agents.values())

    def agent_ids(self) -> list[str]:
        """Ids of all routable agents, in registration order."""
        return [a.agent_id for a in self.all() if a.routable]

    def get_by_domain(self, domain: str) -> list[AgentCapability]:
        return [a for a in self.all() if domain in a.domains and a.routable]

    def get_by_capability(self, tag: str) -> list[AgentCapability]:
        tag = tag.lower()
        return [a for a in self.all() if tag in (c.lower() for c in a.capabilities) and a.routable]

    def default_candidates(self, complexity: int) -> list[str]:
        """Cold-start candidates for a complexity score.

        Below the simple threshold one reviewer, below the complex threshold
        a reviewer plus a tester, otherwise a security auditor as well.
        Unregistered or deprecated defaults are skipped.
        """
        if complexity < self.complexity_simple:
            band = COLD_START_CANDIDATES[0]
        elif complexity < self.complexity_complex:
            band = COLD_START_CANDIDATES[1]
        else:
            band = COLD_START_CANDIDATES[2]
        routable = set(self.agent_ids())
        return [agent_id for agent_id in band if agent_id in routable]

    def agents_for_domains(self, domains: list[str], limit: Optional[int] = None) -> list[str]:
        """First routable agent covering each domain, deduplicated, in domain order."""
        selected: list[str] = []
        for domain in domains:
            for agent in self.get_by_domain(domain):
                if agent.agent_id not in selected:
                    selected.append(agent.agent_id)
                break
        return selected[:limit] if limit is not None else selected

    def summary(self) -> dict[str, Any]:
        agents = self.all()
        by_domain: dict[str, list[str]] = {}
        for agent in agents:
            for domain in agent.domains:
                by_domain.setdefault(domain, []).append(agent.agent_id)
        return {
            "total_agents": len(agents),
            "routable_agents": sum(1 for a in agents if a.routable),
            "by_domain": by_domain,
            "uncovered_domains": sorted(set(DOMAIN_KEYWORDS) - set(by_domain)),
        }


# Singleton instance
_registry: CapabilityRegistry | None = None
_registry_lock = threading.Lock()


def get_capability_registry() -> CapabilityRegistry:
    """Get the singleton capability registry."""
    global _registry
    with _registry_lock:
        if _registry is None:
            _registry = CapabilityRegistry()
        return _registry


def reset_capability_registry() -> None:
    """Drop the singleton so the next access reloads defaults. Useful for testing."""
    global _registry
    with _registry_lock:
        _registry = None


__all__ = [
    "AgentCapability",
    "AgentStatus",
    "CapabilityRegistry",
    "DOMAIN_KEYWORDS",
    "COLD_START_CANDIDATES",
    "get_capability_registry",
    "reset_capability_registry",
]
