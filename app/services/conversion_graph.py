"""
Unit conversion graph engine.

A graph is an immutable snapshot built from the conversion edges of one
owner, optionally scoped to one material. Each stored edge becomes one or two
traversal arcs depending on its direction:

- ``both``: from -> to at ``rate`` and to -> from at ``1 / rate``
- ``forward``: from -> to at ``rate`` only
- ``reverse``: to -> from at ``rate`` only

Inactive edges, edges of other owners and edges of other materials never
enter the graph. When the query names a material, a material-specific edge
replaces every general edge stored for the same (unordered) unit pair.

Rates compose multiplicatively: ``quantity_in_to = quantity_in_from * rate``.
Graphs are rebuilt for every query and hold no state between requests.
"""

import heapq
import logging
import math
from collections import deque
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Dict, FrozenSet, Iterable, Iterator, List, Optional, Set, Tuple

from pydantic import BaseModel, ConfigDict, Field, model_validator

from app.services.exceptions import (
    GraphTooLarge,
    InconsistentCycle,
    InvalidUnitReference,
    NoPathFound,
)

logger = logging.getLogger(__name__)

DEFAULT_PRECISION = 2
DEFAULT_CYCLE_TOLERANCE = 1e-6
# Relative tolerance used when two accumulated rates are compared for ties
RATE_TIE_TOLERANCE = 1e-12


class Direction(str, Enum):
    BOTH = "both"
    FORWARD = "forward"
    REVERSE = "reverse"


class RecordStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class UnitRecord(BaseModel):
    """Read-only unit identity used for labelling and reference checks"""
    model_config = ConfigDict(frozen=True)

    unit_id: int
    unit_code: str
    unit_name: str
    unit_type: str = "basic"
    status: str = "active"


class ConversionTerms(BaseModel):
    """1 ``from_unit`` = ``conversion_rate`` ``to_unit`` within one owner and material scope"""
    model_config = ConfigDict(frozen=True)

    from_unit_id: int
    to_unit_id: int
    conversion_rate: float = Field(gt=0, allow_inf_nan=False)
    owner_id: int
    material_id: Optional[int] = None
    direction: Direction = Direction.BOTH

    @model_validator(mode="after")
    def check_distinct_units(self):
        if self.from_unit_id == self.to_unit_id:
            raise ValueError(f"Unit {self.from_unit_id} cannot be converted to itself")
        return self

    @property
    def is_general(self) -> bool:
        return self.material_id is None

    @property
    def unit_pair(self) -> FrozenSet[int]:
        return frozenset((self.from_unit_id, self.to_unit_id))


class ConversionEdge(ConversionTerms):
    """A stored conversion row"""
    conversion_id: int
    precision: int = Field(DEFAULT_PRECISION, ge=0)
    status: RecordStatus = RecordStatus.ACTIVE

    @property
    def is_active(self) -> bool:
        return self.status is RecordStatus.ACTIVE

    def arcs(self) -> Tuple["Arc", ...]:
        """Traversal arcs implied by this edge's direction"""
        forward = Arc(source=self.from_unit_id, target=self.to_unit_id, weight=self.conversion_rate,
                      conversion_id=self.conversion_id, precision=self.precision)
        if self.direction is Direction.FORWARD:
            return (forward,)
        if self.direction is Direction.REVERSE:
            return (Arc(source=self.to_unit_id, target=self.from_unit_id, weight=self.conversion_rate,
                        conversion_id=self.conversion_id, precision=self.precision),)
        return (
            forward,
            Arc(source=self.to_unit_id, target=self.from_unit_id, weight=1.0 / self.conversion_rate,
                conversion_id=self.conversion_id, precision=self.precision),
        )


class Arc(BaseModel):
    model_config = ConfigDict(frozen=True)

    source: int
    target: int
    weight: float
    conversion_id: int
    precision: int


class ConversionPath(BaseModel):
    model_config = ConfigDict(frozen=True)

    path: Tuple[int, ...]
    rate: float
    conversion_ids: Tuple[int, ...] = ()
    precision: int = DEFAULT_PRECISION

    @property
    def hops(self) -> int:
        return len(self.path) - 1

    def apply(self, quantity: float) -> float:
        """Convert ``quantity`` along this path, rounded to the path precision"""
        value = Decimal(repr(quantity * self.rate))
        step = Decimal(1).scaleb(-self.precision)
        return float(value.quantize(step, rounding=ROUND_HALF_UP))


class Cycle(BaseModel):
    """A closed walk of traversal arcs; ``unit_ids`` starts and ends on the same unit"""
    model_config = ConfigDict(frozen=True)

    unit_ids: Tuple[int, ...]
    conversion_ids: Tuple[int, ...]
    rate_product: float
    consistent: bool


def select_edges(
    edges: Iterable[ConversionEdge],
    owner_id: int,
    material_id: Optional[int] = None,
) -> List[ConversionEdge]:
    """
    Pick the edges visible to a query for ``owner_id`` / ``material_id``.

    General edges are visible to every query; material-specific edges only to
    queries for that material, where they also hide the general edges of the
    same unit pair.
    """
    visible = [
        edge for edge in edges
        if edge.owner_id == owner_id
        and edge.is_active
        and (edge.material_id is None or edge.material_id == material_id)
    ]

    if material_id is not None:
        overridden = {edge.unit_pair for edge in visible if not edge.is_general}
        visible = [
            edge for edge in visible
            if not (edge.is_general and edge.unit_pair in overridden)
        ]

    return sorted(visible, key=lambda edge: edge.conversion_id)


class ConversionGraph:
    """Immutable, scoped view over a set of conversion edges"""

    def __init__(
        self,
        owner_id: int,
        material_id: Optional[int],
        edges: List[ConversionEdge],
        units: Optional[Dict[int, UnitRecord]] = None,
        cycle_tolerance: float = DEFAULT_CYCLE_TOLERANCE,
    ):
        self.owner_id = owner_id
        self.material_id = material_id
        self.cycle_tolerance = cycle_tolerance
        self._edges = tuple(edges)
        self._units = dict(units) if units is not None else None

        adjacency: Dict[int, List[Arc]] = {}
        for edge in self._edges:
            adjacency.setdefault(edge.from_unit_id, [])
            adjacency.setdefault(edge.to_unit_id, [])
            for arc in edge.arcs():
                adjacency[arc.source].append(arc)

        self._adjacency: Dict[int, Tuple[Arc, ...]] = {
            node: tuple(sorted(arcs, key=lambda a: (a.conversion_id, a.target)))
            for node, arcs in adjacency.items()
        }

        incoming: Dict[int, List[Arc]] = {node: [] for node in self._adjacency}
        for node in sorted(self._adjacency):
            for arc in self._adjacency[node]:
                incoming[arc.target].append(arc)
        self._incoming: Dict[int, Tuple[Arc, ...]] = {
            node: tuple(arcs) for node, arcs in incoming.items()
        }

    @property
    def edges(self) -> Tuple[ConversionEdge, ...]:
        return self._edges

    def __len__(self) -> int:
        return len(self._adjacency)

    def unit_label(self, unit_id: int) -> Optional[str]:
        if not self._units or unit_id not in self._units:
            return None
        return self._units[unit_id].unit_name

    def _check_unit(self, unit_id: int) -> None:
        if self._units is not None and unit_id not in self._units:
            raise InvalidUnitReference(unit_id)

    # ------------------------------------------------------------------
    # Path finding
    # ------------------------------------------------------------------

    def find_path(self, from_unit_id: int, to_unit_id: int) -> ConversionPath:
        """
        Cheapest conversion path between two units.

        The accumulated rate is the product of arc weights and is minimised
        with Dijkstra's greedy frontier. Among equal rates the path with fewer
        hops wins, then the one whose first edge has the lower conversion id.

        Raises InvalidUnitReference when a unit registry was supplied and
        does not know a unit, NoPathFound when the units are not connected.
        """
        self._check_unit(from_unit_id)
        self._check_unit(to_unit_id)

        if from_unit_id == to_unit_id:
            return ConversionPath(path=(from_unit_id,), rate=1.0)

        if from_unit_id not in self._adjacency or to_unit_id not in self._adjacency:
            raise NoPathFound(from_unit_id, to_unit_id, self.material_id)

        # label: (accumulated rate, hops, first conversion id)
        best: Dict[int, Tuple[float, int, int]] = {from_unit_id: (1.0, 0, -1)}
        previous: Dict[int, Arc] = {}
        settled = set()
        frontier = [(1.0, 0, -1, from_unit_id)]

        while frontier:
            rate, hops, first_id, node = heapq.heappop(frontier)
            if node in settled or best[node] != (rate, hops, first_id):
                continue
            settled.add(node)
            if node == to_unit_id:
                break

            for arc in self._adjacency[node]:
                if arc.target in settled:
                    continue
                candidate = (
                    rate * arc.weight,
                    hops + 1,
                    arc.conversion_id if node == from_unit_id else first_id,
                )
                current = best.get(arc.target)
                if current is None or _precedes(candidate, current):
                    best[arc.target] = candidate
                    previous[arc.target] = arc
                    heapq.heappush(frontier, (*candidate, arc.target))

        if to_unit_id not in settled:
            raise NoPathFound(from_unit_id, to_unit_id, self.material_id)

        arcs: List[Arc] = []
        node = to_unit_id
        while node != from_unit_id:
            arc = previous[node]
            arcs.append(arc)
            node = arc.source
        arcs.reverse()

        return ConversionPath(
            path=(from_unit_id,) + tuple(arc.target for arc in arcs),
            rate=best[to_unit_id][0],
            conversion_ids=tuple(arc.conversion_id for arc in arcs),
            precision=max(arc.precision for arc in arcs),
        )

    def convert(self, quantity: float, from_unit_id: int, to_unit_id: int) -> Tuple[float, ConversionPath]:
        path = self.find_path(from_unit_id, to_unit_id)
        return path.apply(quantity), path

    # ------------------------------------------------------------------
    # Cycle detection
    # ------------------------------------------------------------------

    def iter_cycles(self) -> Iterator[Cycle]:
        """
        Simple cycles of the graph, one per set of conversions.

        Inside each strongly connected component, every arc ``u -> v`` is
        closed into the walk ``root -> u -> v -> root`` along two BFS trees,
        one leaving the root and one entering it. The walk is split into
        simple cycles at repeated units. These cycles span every cycle of the
        component, so a contradictory rate anywhere shows up in at least one
        of them. Going out over an edge and back over its own reciprocal is
        not a cycle.
        """
        reported = set()

        for members in self._components():
            if len(members) < 2:
                continue
            inside = set(members)
            root = members[0]
            outward = self._spanning_tree(root, inside)
            inward = self._spanning_tree(root, inside, inward=True)

            for node in members:
                for arc in self._adjacency[node]:
                    if arc.target not in inside:
                        continue
                    walk = _path_from_root(outward, node) + [arc] + _path_to_root(inward, arc.target)
                    for loop in _split_walk(root, walk):
                        if len(loop) == 2 and loop[0].conversion_id == loop[1].conversion_id:
                            continue
                        key = frozenset(a.conversion_id for a in loop)
                        if key in reported:
                            continue
                        reported.add(key)
                        product = math.prod(a.weight for a in loop)
                        yield Cycle(
                            unit_ids=(loop[0].source,) + tuple(a.target for a in loop),
                            conversion_ids=tuple(a.conversion_id for a in loop),
                            rate_product=product,
                            consistent=self.is_consistent_product(product),
                        )

    def _components(self) -> List[List[int]]:
        """Strongly connected components (Kosaraju), each sorted by unit id"""
        finished: List[int] = []
        seen: Set[int] = set()

        for start in sorted(self._adjacency):
            if start in seen:
                continue
            seen.add(start)
            pending = [(start, iter(self._adjacency[start]))]
            while pending:
                node, arcs = pending[-1]
                arc = next(arcs, None)
                if arc is None:
                    pending.pop()
                    finished.append(node)
                elif arc.target not in seen:
                    seen.add(arc.target)
                    pending.append((arc.target, iter(self._adjacency[arc.target])))

        components: List[List[int]] = []
        assigned: Set[int] = set()
        for start in reversed(finished):
            if start in assigned:
                continue
            assigned.add(start)
            members = [start]
            pending_nodes = [start]
            while pending_nodes:
                node = pending_nodes.pop()
                for arc in self._incoming[node]:
                    if arc.source not in assigned:
                        assigned.add(arc.source)
                        members.append(arc.source)
                        pending_nodes.append(arc.source)
            components.append(sorted(members))

        return sorted(components)

    def _spanning_tree(self, root: int, inside: Set[int], inward: bool = False) -> Dict[int, Arc]:
        """BFS tree over ``inside``, keyed by unit, of arcs leaving ``root`` (or entering it)"""
        tree: Dict[int, Arc] = {}
        reached = {root}
        queue = deque([root])

        while queue:
            node = queue.popleft()
            for arc in (self._incoming[node] if inward else self._adjacency[node]):
                neighbour = arc.source if inward else arc.target
                if neighbour in inside and neighbour not in reached:
                    reached.add(neighbour)
                    tree[neighbour] = arc
                    queue.append(neighbour)

        return tree

    def is_consistent_product(self, product: float) -> bool:
        return math.isclose(product, 1.0, rel_tol=self.cycle_tolerance)

    def find_cycles(self) -> List[Cycle]:
        return list(self.iter_cycles())

    def has_circular_conversion(self) -> bool:
        return next(self.iter_cycles(), None) is not None

    def has_inconsistent_cycle(self) -> bool:
        return any(not cycle.consistent for cycle in self.iter_cycles())

    def check_consistency(self) -> None:
        """Raise InconsistentCycle for the first cycle whose rates contradict each other"""
        for cycle in self.iter_cycles():
            if not cycle.consistent:
                raise InconsistentCycle(cycle.unit_ids, cycle.rate_product)


def _precedes(candidate: Tuple[float, int, int], current: Tuple[float, int, int]) -> bool:
    if not math.isclose(candidate[0], current[0], rel_tol=RATE_TIE_TOLERANCE):
        return candidate[0] < current[0]
    return candidate[1:] < current[1:]


def _path_from_root(tree: Dict[int, Arc], node: int) -> List[Arc]:
    arcs: List[Arc] = []
    while node in tree:
        arc = tree[node]
        arcs.append(arc)
        node = arc.source
    arcs.reverse()
    return arcs


def _path_to_root(tree: Dict[int, Arc], node: int) -> List[Arc]:
    arcs: List[Arc] = []
    while node in tree:
        arc = tree[node]
        arcs.append(arc)
        node = arc.target
    return arcs


def _split_walk(start: int, walk: List[Arc]) -> Iterator[List[Arc]]:
    """Cut a closed walk into simple cycles, each yielded as soon as it closes"""
    units = [start]
    taken: List[Arc] = []
    position = {start: 0}

    for arc in walk:
        taken.append(arc)
        index = position.get(arc.target)
        if index is None:
            position[arc.target] = len(units)
            units.append(arc.target)
            continue

        loop = taken[index:]
        del taken[index:]
        for unit_id in units[index + 1:]:
            del position[unit_id]
        del units[index + 1:]
        yield loop


def build_graph(
    edges: Iterable[ConversionEdge],
    owner_id: int,
    material_id: Optional[int] = None,
    units: Optional[Iterable[UnitRecord]] = None,
    cycle_tolerance: float = DEFAULT_CYCLE_TOLERANCE,
    max_units: Optional[int] = None,
    max_edges: Optional[int] = None,
) -> ConversionGraph:
    """
    Build the graph snapshot for one ``(owner_id, material_id)`` scope.

    Raises GraphTooLarge when the scoped edge set, or the set of units it
    touches, exceeds the given ceilings.
    """
    selected = select_edges(edges, owner_id, material_id)

    if max_edges is not None and len(selected) > max_edges:
        raise GraphTooLarge("edges", len(selected), max_edges)

    touched = {edge.from_unit_id for edge in selected} | {edge.to_unit_id for edge in selected}
    if max_units is not None and len(touched) > max_units:
        raise GraphTooLarge("units", len(touched), max_units)

    registry = None
    if units is not None:
        registry = {unit.unit_id: unit for unit in units}

    graph = ConversionGraph(owner_id, material_id, selected, registry, cycle_tolerance)
    logger.debug(
        "Built conversion graph owner=%s material=%s units=%d edges=%d",
        owner_id, material_id, len(graph), len(selected),
    )
    return graph
