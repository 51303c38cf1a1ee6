from abc import ABC, abstractmethod
from typing import Any, Optional, Callable, Dict, List, Sequence, TypeVar
import logging
import math
import posixpath
import random

from prometheus_client import Counter, REGISTRY

from unionfs.errors import (
    CancelledError,
    NoUpstreamsFoundError,
    ObjectNotFoundError,
    PermissionDeniedError,
    PolicyNotFoundError,
)
from unionfs.upstream import Context, Entry, Upstream, clean_path

T = TypeVar("T")

ACTION = "action"
CREATE = "create"
SEARCH = "search"
CATEGORIES = (ACTION, CREATE, SEARCH)


class SelectionMetrics:
    """Prometheus counters shared by the policies of one union."""
    def __init__(self, registry=REGISTRY):
        labels = ['policy', 'category', 'upstream']
        self.selections = Counter('unionfs_policy_selections_total', 'Upstreams chosen by a policy', labels, registry=registry)
        self.metric_failures = Counter('unionfs_policy_metric_failures_total', 'Metric queries that failed and used the fallback value', ['policy', 'metric', 'upstream'], registry=registry)
        self.errors = Counter('unionfs_policy_errors_total', 'Selections that ended in an error', ['policy', 'category', 'error'], registry=registry)


def _identity(upstream: Upstream) -> Upstream:
    return upstream


def _entry_upstream(entry: Entry) -> Upstream:
    return entry.upstream


def select_least(ctx: Context, candidates: Sequence[T], metric: Callable[[Context, Upstream], int], *,
                 fallback: float, upstream_of: Callable[[T], Upstream] = _identity,
                 eligible: Optional[Callable[[Upstream, float], bool]] = None,
                 not_found: Callable[[], Exception] = ObjectNotFoundError,
                 on_failure: Optional[Callable[[Upstream, Exception], None]] = None,
                 most: bool = False, rng: Optional[random.Random] = None) -> T:
    """
    Reduce candidates to the one with the smallest (or, with most=True, the
    largest) metric value.

    The candidates are shuffled on a private copy before scanning and the best
    is only replaced on a strict improvement, so ties resolve uniformly at
    random. A metric query that raises is replaced by fallback and reported to
    on_failure; the candidate stays in the running. Candidates failing the
    eligible(upstream, value) predicate are skipped.

    Args:
        ctx: Cancellation context, checked before every metric query.
        candidates: Upstreams or entries; never modified.
        metric: Accessor returning the metric for an upstream.
        fallback: Value used when metric raises.
        upstream_of: Maps a candidate to its upstream.
        eligible: Optional extra predicate on (upstream, value).
        not_found: Factory for the error raised when nothing is eligible.
        on_failure: Called with (upstream, error) for every failed query.
        most: Select the largest value instead of the smallest.
        rng: Random source for the shuffle.
    Returns:
        The winning candidate.
    """
    pool = list(candidates)
    (rng or random).shuffle(pool)

    best = None
    best_value = -math.inf if most else math.inf
    found = False
    for candidate in pool:
        ctx.check()
        upstream = upstream_of(candidate)
        try:
            value = metric(ctx, upstream)
        except CancelledError:
            raise
        except Exception as e:
            value = fallback
            if on_failure is not None:
                on_failure(upstream, e)
        if eligible is not None and not eligible(upstream, value):
            continue
        # First eligible candidate always wins the slot so that an upstream
        # with an infinite fallback can still be chosen when it is alone.
        if not found or (value > best_value if most else value < best_value):
            best, best_value, found = candidate, value, True
    if not found:
        raise not_found()
    return best


class Policy(ABC):
    """
    Abstract base class for upstream selection policies.

    Every policy answers the three operation categories, each in two shapes:
    over upstreams plus a path (the policy checks existence itself) or over
    entries that were already listed. action and create return lists, search
    returns a single upstream or entry.
    """
    name = ""

    def __init__(self, rng: Optional[random.Random] = None, metrics: Optional[SelectionMetrics] = None):
        self.rng = rng or random.Random()
        self.metrics = metrics
        self.logger = logging.getLogger(type(self).__name__)

    @abstractmethod
    def action(self, ctx: Context, upstreams: Sequence[Upstream], path: str) -> List[Upstream]:
        """Choose the upstreams on which to modify an existing path."""
        pass

    @abstractmethod
    def action_entries(self, ctx: Context, entries: Sequence[Entry]) -> List[Entry]:
        pass

    @abstractmethod
    def create(self, ctx: Context, upstreams: Sequence[Upstream], path: str) -> List[Upstream]:
        """Choose the upstreams on which to create path."""
        pass

    @abstractmethod
    def create_entries(self, ctx: Context, entries: Sequence[Entry]) -> List[Entry]:
        pass

    @abstractmethod
    def search(self, ctx: Context, upstreams: Sequence[Upstream], path: str) -> Upstream:
        """Choose the upstream to read path from."""
        pass

    @abstractmethod
    def search_entries(self, ctx: Context, entries: Sequence[Entry]) -> Entry:
        pass

    def __repr__(self):
        return f"{type(self).__name__}()"


def filter_ro(upstreams: Sequence[Upstream]) -> List[Upstream]:
    return [u for u in upstreams if u.writable]


def filter_nc(upstreams: Sequence[Upstream]) -> List[Upstream]:
    return [u for u in upstreams if u.creatable]


def filter_ro_entries(entries: Sequence[Entry]) -> List[Entry]:
    return [e for e in entries if e.upstream.writable]


def filter_nc_entries(entries: Sequence[Entry]) -> List[Entry]:
    return [e for e in entries if e.upstream.creatable]


class All(Policy):
    """Apply to every upstream, without checking that the path exists."""
    name = "all"

    def action(self, ctx, upstreams, path):
        if not upstreams:
            raise ObjectNotFoundError()
        upstreams = filter_ro(upstreams)
        if not upstreams:
            raise PermissionDeniedError()
        return upstreams

    def action_entries(self, ctx, entries):
        if not entries:
            raise ObjectNotFoundError()
        entries = filter_ro_entries(entries)
        if not entries:
            raise PermissionDeniedError()
        return entries

    def create(self, ctx, upstreams, path):
        if not upstreams:
            raise ObjectNotFoundError()
        upstreams = filter_nc(upstreams)
        if not upstreams:
            raise PermissionDeniedError()
        return upstreams

    def create_entries(self, ctx, entries):
        if not entries:
            raise ObjectNotFoundError()
        entries = filter_nc_entries(entries)
        if not entries:
            raise PermissionDeniedError()
        return entries

    def search(self, ctx, upstreams, path):
        if not upstreams:
            raise ObjectNotFoundError()
        return upstreams[0]

    def search_entries(self, ctx, entries):
        if not entries:
            raise ObjectNotFoundError()
        return entries[0]


class EpAll(Policy):
    """
    Existing path, all.
    Keeps every upstream on which the path exists. For create the parent
    directory of the path must exist, since the object itself does not yet.
    """
    name = "epall"

    def existing(self, ctx: Context, upstreams: Sequence[Upstream], path: str) -> List[Upstream]:
        """Return the upstreams on which path exists, in input order."""
        found = []
        for u in upstreams:
            ctx.check()
            if u.exists(ctx, path):
                found.append(u)
        if not found:
            raise ObjectNotFoundError(f"{path or '/'}: object not found")
        return found

    def action(self, ctx, upstreams, path):
        if not upstreams:
            raise ObjectNotFoundError()
        upstreams = filter_ro(upstreams)
        if not upstreams:
            raise PermissionDeniedError()
        return self.existing(ctx, upstreams, path)

    def action_entries(self, ctx, entries):
        if not entries:
            raise ObjectNotFoundError()
        entries = filter_ro_entries(entries)
        if not entries:
            raise PermissionDeniedError()
        return entries

    def create(self, ctx, upstreams, path):
        if not upstreams:
            raise ObjectNotFoundError()
        upstreams = filter_nc(upstreams)
        if not upstreams:
            raise PermissionDeniedError()
        return self.existing(ctx, upstreams, posixpath.dirname(clean_path(path)))

    def create_entries(self, ctx, entries):
        if not entries:
            raise ObjectNotFoundError()
        entries = filter_nc_entries(entries)
        if not entries:
            raise PermissionDeniedError()
        return entries

    def search(self, ctx, upstreams, path):
        if not upstreams:
            raise ObjectNotFoundError()
        return self.existing(ctx, upstreams, path)[0]

    def search_entries(self, ctx, entries):
        if not entries:
            raise ObjectNotFoundError()
        return entries[0]


class EpFF(EpAll):
    """Existing path, first found: the first candidate in configured order."""
    name = "epff"

    def action(self, ctx, upstreams, path):
        return super().action(ctx, upstreams, path)[:1]

    def action_entries(self, ctx, entries):
        return super().action_entries(ctx, entries)[:1]

    def create(self, ctx, upstreams, path):
        return super().create(ctx, upstreams, path)[:1]

    def create_entries(self, ctx, entries):
        return super().create_entries(ctx, entries)[:1]


class EpMetric(EpAll):
    """
    Existing path policy that narrows the candidates to a single winner by a
    capacity metric of their upstreams. Subclasses choose the metric, the
    value substituted when an upstream cannot report it, the comparison
    direction and an optional eligibility rule.
    """
    metric_name = ""
    fallback: float = 0
    fallback_label = ""
    most = False
    not_found = ObjectNotFoundError

    @abstractmethod
    def metric(self, ctx: Context, upstream: Upstream) -> int:
        pass

    def eligible(self, upstream: Upstream, value: float) -> bool:
        return True

    def _metric_failed(self, upstream: Upstream, error: Exception) -> None:
        self.logger.warning(
            f"{self.metric_name} is not supported for upstream {upstream.name}, "
            f"treating as {self.fallback_label}: {error}"
        )
        if self.metrics:
            self.metrics.metric_failures.labels(policy=self.name, metric=self.metric_name, upstream=upstream.name).inc()

    def select(self, ctx: Context, candidates: Sequence[Any], upstream_of=_identity) -> Any:
        winner = select_least(
            ctx, candidates, self.metric,
            fallback=self.fallback,
            upstream_of=upstream_of,
            eligible=self.eligible,
            not_found=type(self).not_found,
            on_failure=self._metric_failed,
            most=self.most,
            rng=self.rng,
        )
        self.logger.debug(f"Selected {upstream_of(winner).name} out of {len(candidates)} candidates")
        return winner

    def action(self, ctx, upstreams, path):
        return [self.select(ctx, super().action(ctx, upstreams, path))]

    def action_entries(self, ctx, entries):
        return [self.select(ctx, super().action_entries(ctx, entries), _entry_upstream)]

    def create(self, ctx, upstreams, path):
        return [self.select(ctx, super().create(ctx, upstreams, path))]

    def create_entries(self, ctx, entries):
        return [self.select(ctx, super().create_entries(ctx, entries), _entry_upstream)]

    def search(self, ctx, upstreams, path):
        if not upstreams:
            raise ObjectNotFoundError()
        return self.select(ctx, self.existing(ctx, upstreams, path))

    def search_entries(self, ctx, entries):
        if not entries:
            raise ObjectNotFoundError()
        return self.select(ctx, entries, _entry_upstream)


class EpLno(EpMetric):
    """
    Existing path, least number of objects.

    Of all the candidates on which the path exists choose the one with the
    fewest objects; ties are broken randomly. An upstream that cannot report
    its object count is treated as holding 0 objects, which makes it the
    preferred candidate.
    """
    name = "eplno"
    metric_name = "Number of objects"
    fallback = 0
    fallback_label = "0"

    def metric(self, ctx, upstream):
        return upstream.num_objects(ctx)


class EpLfs(EpMetric):
    """
    Existing path, least free space.

    Of all the candidates on which the path exists choose the one with the
    least free space that still has more than its min_free_space spare; ties
    are broken randomly. An upstream that cannot report free space is treated
    as having infinite space and only wins when nothing else is eligible.
    """
    name = "eplfs"
    metric_name = "Free space"
    fallback = math.inf
    fallback_label = "infinite"
    not_found = NoUpstreamsFoundError

    def metric(self, ctx, upstream):
        return upstream.free_space(ctx)

    def eligible(self, upstream, value):
        return value > upstream.min_free_space


class EpMfs(EpLfs):
    """Existing path, most free space. Unknown free space counts as infinite."""
    name = "epmfs"
    most = True


BUILTIN_POLICIES = (All, EpAll, EpFF, EpLno, EpLfs, EpMfs)


class PolicyRegistry:
    """Name to policy factory mapping, populated at start-up."""
    def __init__(self):
        self._factories: Dict[str, Callable[..., Policy]] = {}
        self.logger = logging.getLogger("PolicyRegistry")

    def register(self, name: str, factory: Callable[..., Policy]) -> None:
        key = name.lower()
        if key in self._factories:
            self.logger.debug(f"Replacing policy registered as {key!r}")
        self._factories[key] = factory

    def get(self, name: str, **kwargs: Any) -> Policy:
        """Instantiate the policy registered under name (case insensitive)."""
        try:
            factory = self._factories[name.lower()]
        except KeyError:
            raise PolicyNotFoundError(f"didn't find policy called {name!r}") from None
        return factory(**kwargs)

    def names(self) -> List[str]:
        return sorted(self._factories)

    def __contains__(self, name: str) -> bool:
        return name.lower() in self._factories


def register_builtin_policies(registry: PolicyRegistry) -> PolicyRegistry:
    for cls in BUILTIN_POLICIES:
        registry.register(cls.name, cls)
    return registry
