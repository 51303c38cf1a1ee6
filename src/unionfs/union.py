from typing import Optional, Dict, List, Sequence
import logging
import random

from prometheus_client import Gauge, REGISTRY, start_http_server

from unionfs.config import UnionConfig
from unionfs.errors import CancelledError, UnionError
from unionfs.policy import (
    ACTION,
    CREATE,
    SEARCH,
    Policy,
    PolicyRegistry,
    SelectionMetrics,
    register_builtin_policies,
)
from unionfs.upstream import Context, Entry, LocalUpstream, Upstream, background


class UnionFs:
    """
    Presents several upstreams as one namespace and asks the configured
    policies which of them should serve each operation.

    Nothing is read or written here; every method returns the selected
    upstream(s) or entry(ies) for the caller to act on.

    Metrics are registered on `registry`, the process-wide
    prometheus_client REGISTRY by default. A registry holds the metrics of
    one union only: constructing a second UnionFs on the same registry
    raises ValueError (DuplicateTimeseries), so give every further union in
    the process its own CollectorRegistry.
    """
    def __init__(self, upstreams: Optional[Sequence[Upstream]] = None, config: Optional[UnionConfig] = None,
                 policy_registry: Optional[PolicyRegistry] = None, registry=REGISTRY):
        self.config = config or UnionConfig()
        self.policy_registry = policy_registry or register_builtin_policies(PolicyRegistry())
        self.registry = registry
        self.logger = logging.getLogger("UnionFs")

        if upstreams is None:
            upstreams = [LocalUpstream(**options) for options in self.config.upstream_options()]
        self.upstreams: List[Upstream] = list(upstreams)
        if not self.upstreams:
            raise ValueError("a union needs at least one upstream")

        self.metrics = SelectionMetrics(registry=registry)
        self._prom_labels = ['upstream']
        self._prom_free_bytes = Gauge('unionfs_upstream_free_bytes', 'Free bytes reported by an upstream', self._prom_labels, registry=registry)
        self._prom_objects = Gauge('unionfs_upstream_objects', 'Number of objects reported by an upstream', self._prom_labels, registry=registry)
        self._prom_min_free = Gauge('unionfs_upstream_min_free_bytes', 'Reserved free space of an upstream', self._prom_labels, registry=registry)
        for u in self.upstreams:
            self._prom_min_free.labels(upstream=u.name).set(u.min_free_space)

        self.policies: Dict[str, Policy] = self._load_policies(self.config)
        self.logger.info(
            f"Union of {len(self.upstreams)} upstreams ({', '.join(u.name for u in self.upstreams)}): "
            f"action={self.config.action_policy} create={self.config.create_policy} "
            f"search={self.config.search_policy}"
        )

    def _load_policies(self, config: UnionConfig) -> Dict[str, Policy]:
        names = {ACTION: config.action_policy, CREATE: config.create_policy, SEARCH: config.search_policy}
        policies = {}
        for category, name in names.items():
            # One random source per category so concurrent categories never share state
            seed = None if config.seed is None else f"{config.seed}:{category}"
            policies[category] = self.policy_registry.get(name, rng=random.Random(seed), metrics=self.metrics)
        return policies

    def update_config(self, new_config: UnionConfig) -> None:
        """Swap the policies at runtime. Upstreams are kept as they are."""
        policies = self._load_policies(new_config)
        old_config = self.config
        self.config = new_config
        self.policies = policies
        self.logger.info(
            f"Union policies updated: action={new_config.action_policy}({old_config.action_policy}) "
            f"create={new_config.create_policy}({old_config.create_policy}) "
            f"search={new_config.search_policy}({old_config.search_policy})"
        )

    def upstream(self, name: str) -> Upstream:
        for u in self.upstreams:
            if u.name == name:
                return u
        raise KeyError(name)

    def _observe(self, category: str, call):
        policy = self.policies[category]
        try:
            result = call(policy)
        except UnionError as e:
            self.metrics.errors.labels(policy=policy.name, category=category, error=type(e).__name__).inc()
            if not isinstance(e, CancelledError):
                self.logger.debug(f"{policy.name} {category} failed: {e}")
            raise
        for winner in result if isinstance(result, list) else [result]:
            upstream = winner.upstream if isinstance(winner, Entry) else winner
            self.metrics.selections.labels(policy=policy.name, category=category, upstream=upstream.name).inc()
        return result

    def action(self, ctx: Context, path: str) -> List[Upstream]:
        return self._observe(ACTION, lambda p: p.action(ctx, self.upstreams, path))

    def create(self, ctx: Context, path: str) -> List[Upstream]:
        return self._observe(CREATE, lambda p: p.create(ctx, self.upstreams, path))

    def search(self, ctx: Context, path: str) -> Upstream:
        return self._observe(SEARCH, lambda p: p.search(ctx, self.upstreams, path))

    def action_entries(self, ctx: Context, entries: Sequence[Entry]) -> List[Entry]:
        return self._observe(ACTION, lambda p: p.action_entries(ctx, entries))

    def create_entries(self, ctx: Context, entries: Sequence[Entry]) -> List[Entry]:
        return self._observe(CREATE, lambda p: p.create_entries(ctx, entries))

    def search_entries(self, ctx: Context, entries: Sequence[Entry]) -> Entry:
        return self._observe(SEARCH, lambda p: p.search_entries(ctx, entries))

    def entries(self, ctx: Context, path: str) -> List[Entry]:
        """Stat path on every upstream, returning the entries that exist."""
        found = []
        for u in self.upstreams:
            entry = u.entry(ctx, path)
            if entry is not None:
                found.append(entry)
        return found

    def export_metrics(self, ctx: Optional[Context] = None) -> None:
        """Refresh the per-upstream capacity gauges. Unsupported metrics are skipped."""
        ctx = ctx or background()
        for u in self.upstreams:
            labels = {'upstream': u.name}
            try:
                self._prom_free_bytes.labels(**labels).set(u.free_space(ctx))
            except CancelledError:
                raise
            except Exception as e:
                self.logger.debug(f"No free space for {u.name}: {e}")
            try:
                self._prom_objects.labels(**labels).set(u.num_objects(ctx))
            except CancelledError:
                raise
            except Exception as e:
                self.logger.debug(f"No object count for {u.name}: {e}")
        self.logger.debug("Prometheus upstream gauges updated.")

    def start_prometheus_server(self, port: int = 8000) -> None:
        try:
            start_http_server(port, registry=self.registry)
            self.logger.info(f"Prometheus metrics server started on port {port}")
        except OSError as e:
            self.logger.error(f"Failed to start Prometheus server on port {port}: {e}")
            raise
