"""Dependency graph for ordering multi-domain deployments."""

from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Dict, Iterable, List, Mapping, Optional, Set

from edge_deploy.utils.errors import ValidationError


@dataclass
class DomainNode:
    """Node in the domain dependency graph."""

    domain: str
    dependencies: Set[str]  # Domains that must deploy first


class DomainDependencyGraph:
    """Directed acyclic graph of domain deployment dependencies."""

    def __init__(self):
        """Initialize empty dependency graph."""
        self.nodes: Dict[str, DomainNode] = {}
        self._adjacency_list: Dict[str, Set[str]] = defaultdict(set)

    @classmethod
    def from_mapping(
        cls,
        domains: Iterable[str],
        dependencies: Optional[Mapping[str, Iterable[str]]] = None
    ) -> "DomainDependencyGraph":
        """Build a graph for ``domains`` from a ``{domain: [depends_on, ...]}`` mapping."""
        graph = cls()
        dependencies = dependencies or {}
        for domain in domains:
            graph.add_domain(domain, dependencies.get(domain, ()))
        return graph

    def add_domain(self, domain: str, depends_on: Iterable[str] = ()) -> None:
        """Add a domain to the graph, replacing its dependencies if already present.

        Args:
            domain: Domain name
            depends_on: Domains that must deploy before this one
        """
        new_deps = set(depends_on)
        node = self.nodes.get(domain)
        if node is None:
            node = DomainNode(domain=domain, dependencies=set())
            self.nodes[domain] = node

        for dep in node.dependencies - new_deps:
            self._adjacency_list[dep].discard(domain)
        for dep in new_deps - node.dependencies:
            self._adjacency_list[dep].add(domain)
        node.dependencies = new_deps

    def get_dependencies(self, domain: str) -> Set[str]:
        if domain not in self.nodes:
            return set()
        return self.nodes[domain].dependencies.copy()

    def get_dependents(self, domain: str) -> Set[str]:
        return self._adjacency_list[domain].copy()

    def get_all_dependents(self, domain: str) -> Set[str]:
        """Get all transitive dependents of a domain.

        Args:
            domain: Domain name

        Returns:
            Every domain that directly or indirectly waits on ``domain``
        """
        visited = set()
        queue = deque([domain])

        while queue:
            current = queue.popleft()
            if current in visited:
                continue
            visited.add(current)
            for dependent in self._adjacency_list[current]:
                if dependent not in visited:
                    queue.append(dependent)

        visited.discard(domain)
        return visited

    def detect_circular_dependencies(self) -> Optional[List[str]]:
        """Detect circular dependencies in the graph.

        Returns:
            List of domains forming a cycle, or None if no cycle exists
        """
        # White (0): unvisited, Gray (1): visiting, Black (2): visited
        color = {domain: 0 for domain in self.nodes}
        parent: Dict[str, str] = {}

        def dfs(domain: str) -> Optional[List[str]]:
            color[domain] = 1

            for dependent in self._adjacency_list[domain]:
                if dependent not in color:
                    continue
                if color[dependent] == 1:
                    cycle = [dependent]
                    current = domain
                    while current != dependent:
                        cycle.append(current)
                        current = parent.get(current)
                        if current is None:
                            break
                    cycle.append(dependent)
                    return list(reversed(cycle))

                if color[dependent] == 0:
                    parent[dependent] = domain
                    cycle = dfs(dependent)
                    if cycle:
                        return cycle

            color[domain] = 2
            return None

        for domain in self.nodes:
            if color[domain] == 0:
                cycle = dfs(domain)
                if cycle:
                    return cycle

        return None

    def validate(self) -> None:
        """Validate the dependency graph.

        Raises:
            ValidationError: On circular dependencies or dependencies on unknown domains
        """
        for domain, node in self.nodes.items():
            for dep in node.dependencies:
                if dep not in self.nodes:
                    raise ValidationError(
                        f"Domain '{domain}' depends on '{dep}' which is not part of this deployment",
                        suggestions=[f"Add {dep} to the deployment or drop the dependency"],
                    )

        cycle = self.detect_circular_dependencies()
        if cycle:
            raise ValidationError(f"Circular domain dependency detected: {' -> '.join(cycle)}")

    def get_deployment_waves(self) -> List[List[str]]:
        """Group domains into waves that can deploy in parallel.

        Domains in a wave only depend on domains in earlier waves. Order inside
        a wave follows insertion order.

        Returns:
            List of waves, each a list of domain names

        Raises:
            ValidationError: If the graph is invalid
        """
        self.validate()

        # Kahn's algorithm, grouped by level
        in_degree = {domain: len(node.dependencies) for domain, node in self.nodes.items()}
        current_wave = [domain for domain, degree in in_degree.items() if degree == 0]
        waves = []

        while current_wave:
            waves.append(current_wave)
            next_wave = []
            for domain in current_wave:
                for dependent in self._adjacency_list[domain]:
                    in_degree[dependent] -= 1
                    if in_degree[dependent] == 0:
                        next_wave.append(dependent)
            current_wave = sorted(next_wave, key=list(self.nodes).index)

        if sum(len(wave) for wave in waves) != len(self.nodes):
            raise ValidationError("Cannot create deployment waves: graph contains cycles")

        return waves

    def size(self) -> int:
        return len(self.nodes)
