"""
Observability Metrics
---------------------
Lightweight Redis counters/timers and a snapshot consumed by /admin/metrics.
Provider latencies are kept as the most recent samples (LPUSH+LTRIM) per
provider; percentiles are computed over that window on read.
"""
from __future__ import annotations
import time
from typing import Dict, List, Tuple
from verifyflow.store.redis_conn import get_redis

K_PROVIDERS = "metrics:providers"                          # SADD provider name
K_PROVIDER_LAT = "metrics:provider:{provider}:latencies"   # LPUSH ms
K_PROVIDER_CALLS = "metrics:provider:{provider}:calls"     # INCR
K_PROVIDER_TRANSIENT = "metrics:provider:{provider}:transient"  # INCR
K_SUBMISSIONS = "metrics:submissions"                      # HINCRBY "{step}:{outcome}"
K_SESSIONS_CREATED = "metrics:sessions:created"            # INCR
K_SESSION_STATUS = "metrics:sessions:status"               # HINCRBY status

_MAX_SAMPLES = 500  # cap to bound percentile computation cost


def _percentile(data: List[float], p: float) -> float:
    """Deterministic percentile (nearest-rank on sorted data)."""
    if not data:
        return 0.0
    d = sorted(data)
    k = max(1, int(round(p * len(d))))
    return float(d[k - 1])


def _p50_p95(latencies: List[float]) -> Tuple[float, float]:
    if not latencies:
        return 0.0, 0.0
    return _percentile(latencies, 0.50), _percentile(latencies, 0.95)


def _now_s() -> int:
    return int(time.time())


def record_provider_latency(provider: str, ms: int) -> None:
    try:
        ms = int(ms)
    except (TypeError, ValueError):
        return
    r = get_redis()
    key = K_PROVIDER_LAT.format(provider=provider)
    r.sadd(K_PROVIDERS, provider)
    r.incr(K_PROVIDER_CALLS.format(provider=provider), 1)
    r.lpush(key, ms)
    r.ltrim(key, 0, _MAX_SAMPLES - 1)


def increment_provider_transient(provider: str) -> None:
    r = get_redis()
    r.sadd(K_PROVIDERS, provider)
    r.incr(K_PROVIDER_TRANSIENT.format(provider=provider), 1)


def increment_submission(step_id: str, outcome: str) -> None:
    get_redis().hincrby(K_SUBMISSIONS, f"{step_id}:{outcome}", 1)


def increment_session_created() -> None:
    get_redis().incr(K_SESSIONS_CREATED, 1)


def increment_session_status(status: str) -> None:
    get_redis().hincrby(K_SESSION_STATUS, status, 1)


def _read_latency_list(key: str) -> List[float]:
    r = get_redis()
    out: List[float] = []
    for x in r.lrange(key, 0, _MAX_SAMPLES - 1) or []:
        try:
            out.append(float(x))
        except (TypeError, ValueError):
            continue
    return out


def _int_map(raw: Dict[str, str]) -> Dict[str, int]:
    return {str(k): int(v) for k, v in (raw or {}).items()}


def get_metrics_snapshot() -> dict:
    """
    Shape:
      providers: {name: {calls, transient_errors, p50_latency_ms, p95_latency_ms}}
      submissions: {"{step}:{outcome}": count}
      sessions_created, session_status: {status: count}
    """
    r = get_redis()
    providers = {}
    for name in sorted(str(p) for p in (r.smembers(K_PROVIDERS) or [])):
        p50, p95 = _p50_p95(_read_latency_list(K_PROVIDER_LAT.format(provider=name)))
        providers[name] = {
            "calls": int(r.get(K_PROVIDER_CALLS.format(provider=name)) or 0),
            "transient_errors": int(r.get(K_PROVIDER_TRANSIENT.format(provider=name)) or 0),
            "p50_latency_ms": round(p50, 1),
            "p95_latency_ms": round(p95, 1),
        }
    return {
        "providers": providers,
        "submissions": _int_map(r.hgetall(K_SUBMISSIONS)),
        "sessions_created": int(r.get(K_SESSIONS_CREATED) or 0),
        "session_status": _int_map(r.hgetall(K_SESSION_STATUS)),
        "snapshot_at": _now_s(),
    }
