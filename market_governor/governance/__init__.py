"""
Request governance for outbound marketplace API calls.

This sub-package provides:

  governance/models.py       Pydantic policy models and runtime records.
  governance/errors.py       GovernorError hierarchy.
  governance/rate_limiter.py Fixed one-minute admission window.
  governance/pacing.py       Randomized inter-request delay.
  governance/identity.py     Proxy round-robin and User-Agent selection.
  governance/cache.py        TTL response cache with lazy eviction.
  governance/classifier.py   Blocking / throttling heuristics.
  governance/alerts.py       Fire-and-forget bot notifications.
  governance/governor.py     RequestGovernor: the dispatch pipeline.
  governance/monitor.py      Periodic self-monitor.
  governance/bootstrap.py    Startup policy, operator actions, factories.
  governance/persistence.py  Settings-store load/save of the policy.
  governance/reporter.py     ASCII formatters for CLI commands.

Purpose
-------
Every call to the marketplace goes through one ``RequestGovernor``, so the
per-minute budget, the randomized pacing, identity rotation, response caching
and block detection hold for the whole process rather than per call site.

``bootstrap`` depends on ``market_governor.config`` and is therefore not
re-exported here; import it from its module::

    from market_governor.governance.bootstrap import create_runtime
"""

from market_governor.governance.models import (
    AlertChannel,
    BlockEvent,
    GovernanceConfig,
    Identity,
    ProxyEndpoint,
)
from market_governor.governance.errors import (
    ConfigurationInvalid,
    GovernorError,
    NetworkFailure,
    RateLimitExceeded,
)
from market_governor.governance.classifier import (
    BlockingClassifier,
    BlockingRules,
    BlockingVerdict,
)
from market_governor.governance.alerts import AlertDispatcher
from market_governor.governance.governor import (
    DispatchOutcome,
    GovernorStats,
    RequestGovernor,
)
from market_governor.governance.monitor import MonitorTickResult, SelfMonitor

__all__ = [
    # models
    "AlertChannel",
    "BlockEvent",
    "GovernanceConfig",
    "Identity",
    "ProxyEndpoint",
    # errors
    "ConfigurationInvalid",
    "GovernorError",
    "NetworkFailure",
    "RateLimitExceeded",
    # classifier
    "BlockingClassifier",
    "BlockingRules",
    "BlockingVerdict",
    # alerts
    "AlertDispatcher",
    # governor
    "DispatchOutcome",
    "GovernorStats",
    "RequestGovernor",
    # monitor
    "MonitorTickResult",
    "SelfMonitor",
]
