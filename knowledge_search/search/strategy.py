"""Query strategy selection for multi-knowledge-base searches."""

import math
from dataclasses import asdict, dataclass

from knowledge_search.search.exceptions import SearchPreconditionError

# Above this many knowledge bases every search fans out per partition.
PARALLEL_KB_THRESHOLD = 4
# With more than this many knowledge bases, large top_k also fans out.
PARALLEL_KB_MIN = 2
PARALLEL_TOP_K_THRESHOLD = 50
# Tighter relevance cutoff when searching more than this many knowledge bases.
TIGHT_THRESHOLD_KB_COUNT = 3
DEFAULT_DISTANCE_THRESHOLD = 1.0
TIGHT_DISTANCE_THRESHOLD = 0.8
# Per-partition overfetch so the merged result can still fill top_k.
PARALLEL_OVERFETCH = 5


@dataclass(frozen=True)
class QueryStrategy:
    """How a search over several knowledge bases should be executed."""

    use_parallel: bool
    distance_threshold: float
    parallel_limit: int
    single_query_optimized: bool

    def to_dict(self) -> dict[str, bool | float | int]:
        return asdict(self)


def select_strategy(kb_count: int, top_k: int) -> QueryStrategy:
    """Choose between a single query and a per-knowledge-base fan-out.

    A single ``IN (...)`` query over many knowledge bases cannot apply ORDER BY
    and LIMIT fairly when densities are skewed, so larger searches run one
    bounded query per knowledge base and merge afterwards.

    Args:
        kb_count: Number of knowledge bases searched.
        top_k: Requested number of results.

    Returns:
        The execution plan.

    Raises:
        SearchPreconditionError: If kb_count or top_k is less than 1.
    """
    if kb_count < 1:
        raise SearchPreconditionError("At least one knowledge base is required")
    if top_k < 1:
        raise SearchPreconditionError("top_k must be at least 1")

    use_parallel = kb_count > PARALLEL_KB_THRESHOLD or (
        kb_count > PARALLEL_KB_MIN and top_k > PARALLEL_TOP_K_THRESHOLD
    )
    distance_threshold = (
        TIGHT_DISTANCE_THRESHOLD
        if kb_count > TIGHT_THRESHOLD_KB_COUNT
        else DEFAULT_DISTANCE_THRESHOLD
    )

    return QueryStrategy(
        use_parallel=use_parallel,
        distance_threshold=distance_threshold,
        parallel_limit=math.ceil(top_k / kb_count) + PARALLEL_OVERFETCH,
        single_query_optimized=kb_count <= PARALLEL_KB_MIN,
    )
