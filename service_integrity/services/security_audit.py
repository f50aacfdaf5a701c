"""
Security audit: per-(ip, endpoint) fixed-window rate limiting, a bounded
buffer of recent security events and a rule-based posture scan.

Constructed once in `create_app` and reached through `app.state`; tests
build isolated instances. Rate-limit counters live in a `limits` storage
backend: `memory://` is process-local, so multi-instance deployments must
point SECURITY_RATE_LIMIT_STORAGE at a shared store such as redis.
"""
import re
import threading
from dataclasses import dataclass, field, asdict
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import structlog
from limits import RateLimitItemPerSecond
from limits.storage import storage_from_string
from limits.strategies import FixedWindowRateLimiter
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse

from ..config import Settings, settings as default_settings


logger = structlog.get_logger(__name__)

EVENT_TYPES = ("login_attempt", "api_access", "suspicious_activity", "vulnerability_scan")
SEVERITIES = ("low", "medium", "high", "critical")

RECOMMENDATIONS = [
    "Regularly update dependencies to patch security vulnerabilities",
    "Implement multi-factor authentication for admin accounts",
    "Set up automated security monitoring and alerting",
    "Conduct regular security audits and penetration testing",
    "Implement HTTPS for all communications",
    "Use environment variables for all sensitive configuration",
]


@dataclass
class SecurityEvent:
    type: str
    severity: str
    details: str
    ip: str
    user_id: Optional[int] = None
    user_agent: Optional[str] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["timestamp"] = self.timestamp.isoformat()
        return data


class SecurityEventStore:
    """Where security events are kept; swap for a shared store across instances."""

    def add(self, event: SecurityEvent) -> None:
        raise NotImplementedError

    def events(self) -> List[SecurityEvent]:
        raise NotImplementedError


class InMemorySecurityEventStore(SecurityEventStore):
    """Bounded list; on overflow the oldest `prune` events are dropped in one go."""

    def __init__(self, capacity: int = 10000, prune: int = 1000):
        self.capacity = capacity
        self.prune = max(1, min(prune, capacity))
        self._events: List[SecurityEvent] = []
        self._lock = threading.Lock()

    def add(self, event: SecurityEvent) -> None:
        with self._lock:
            self._events.append(event)
            if len(self._events) > self.capacity:
                del self._events[:self.prune]

    def events(self) -> List[SecurityEvent]:
        with self._lock:
            return list(self._events)

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)


@dataclass
class Finding:
    type: str
    severity: str
    description: str
    recommendation: str


class SecurityAuditService:
    def __init__(
        self,
        config: Optional[Settings] = None,
        event_store: Optional[SecurityEventStore] = None,
        storage_uri: Optional[str] = None,
    ):
        self.config = config or default_settings
        self.event_store = event_store or InMemorySecurityEventStore(
            capacity=self.config.security_event_capacity,
            prune=self.config.security_event_prune,
        )
        self._storage = storage_from_string(storage_uri or self.config.security_rate_limit_storage)
        self._limiter = FixedWindowRateLimiter(self._storage)

    # -- rate limiting ----------------------------------------------------

    def check_rate_limit(
        self,
        ip: str,
        endpoint: str,
        max_requests: Optional[int] = None,
        window_ms: Optional[int] = None,
    ) -> bool:
        """
        Count one request for (ip, endpoint); False once the window's quota is spent.

        Windows are whole seconds (the limiter's granularity); `max_requests=0`
        denies everything.
        """
        if max_requests is None:
            max_requests = self.config.security_rate_limit_max
        if window_ms is None:
            window_ms = self.config.security_rate_limit_window_ms
        if max_requests < 0:
            raise ValueError(f"max_requests must be >= 0, got {max_requests}")
        if window_ms <= 0 or window_ms % 1000:
            raise ValueError(f"window_ms must be a positive multiple of 1000, got {window_ms}")
        item = RateLimitItemPerSecond(max_requests, window_ms // 1000)

        if self._limiter.hit(item, ip, endpoint):
            return True

        self.log_security_event(
            "suspicious_activity",
            "high",
            f"Rate limit exceeded for {ip} on {endpoint}",
            ip,
        )
        logger.warning("rate_limit_exceeded", ip=ip, endpoint=endpoint, max_requests=max_requests, window_ms=window_ms)
        return False

    def reset_rate_limits(self) -> None:
        self._storage.reset()

    # -- events -----------------------------------------------------------

    def log_security_event(
        self,
        type: str,
        severity: str,
        details: str,
        ip: str,
        user_id: Optional[int] = None,
        user_agent: Optional[str] = None,
    ) -> SecurityEvent:
        if type not in EVENT_TYPES:
            raise ValueError(f"Unknown security event type: {type}")
        if severity not in SEVERITIES:
            raise ValueError(f"Unknown severity: {severity}")
        event = SecurityEvent(
            type=type,
            severity=severity,
            details=details,
            ip=ip,
            user_id=user_id,
            user_agent=user_agent,
        )
        self.event_store.add(event)
        if severity == "critical":
            logger.error("security_critical", details=details, ip=ip, user_id=user_id)
        return event

    def get_recent_security_events(self, hours: int = 24) -> List[SecurityEvent]:
        cutoff = datetime.now(timezone.utc) - timedelta(hours=hours)
        return [e for e in self.event_store.events() if e.timestamp > cutoff]

    # -- posture scan -----------------------------------------------------

    def scan_for_vulnerabilities(self) -> Dict[str, Any]:
        """Deterministic checks against the running configuration; 100 means no findings."""
        config = self.config
        findings: List[Finding] = []
        score = 100
        production = config.environment.lower() not in {"dev", "development", "test", "local"}

        # The ORM issues parameterized queries only; raw SQL is limited to the SQLite BEGIN hook.

        if config.jwt_secret in {"change-me", "", "secret"} or len(config.jwt_secret) < 32:
            findings.append(Finding(
                type="WEAK_AUTHENTICATION",
                severity="medium",
                description="JWT secret is a default or shorter than 32 characters",
                recommendation="Set JWT_SECRET to a long random value",
            ))
            score -= 15

        if production and "*" in config.cors_allow_origins:
            findings.append(Finding(
                type="DATA_EXPOSURE",
                severity="critical",
                description="CORS allows any origin with credentials outside development",
                recommendation="Restrict CORS_ALLOW_ORIGINS to known frontends",
            ))
            score -= 30

        if config.jwt_ttl_seconds > 60 * 60 * 24:
            findings.append(Finding(
                type="SESSION_INSECURITY",
                severity="medium",
                description="Access tokens live longer than 24 hours",
                recommendation="Shorten JWT_TTL and rely on re-authentication",
            ))
            score -= 10

        if production and config.security_rate_limit_storage.startswith("memory://"):
            findings.append(Finding(
                type="LOCAL_RATE_LIMIT",
                severity="low",
                description="Rate-limit counters are process-local",
                recommendation="Use a shared SECURITY_RATE_LIMIT_STORAGE when running several instances",
            ))
            score -= 5

        if production and config.database_url.startswith("sqlite"):
            findings.append(Finding(
                type="WEAK_DATASTORE",
                severity="medium",
                description="SQLite lacks row-level locking for concurrent deletes and restores",
                recommendation="Use PostgreSQL in production",
            ))
            score -= 10

        return {
            "score": max(0, score),
            "vulnerabilities": [asdict(f) for f in findings],
        }

    def generate_security_report(self) -> Dict[str, Any]:
        scan = self.scan_for_vulnerabilities()
        events = self.event_store.events()
        day_ago = datetime.now(timezone.utc) - timedelta(hours=24)
        self.log_security_event("vulnerability_scan", "low", f"Posture scan score {scan['score']}", "system")
        return {
            "overall_score": scan["score"],
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "vulnerabilities": scan["vulnerabilities"],
            "recommendations": list(RECOMMENDATIONS),
            "audit_log_summary": {
                "total_events": len(events),
                "critical_events": sum(1 for e in events if e.severity == "critical"),
                "recent_suspicious_activity": sum(
                    1 for e in events if e.type == "suspicious_activity" and e.timestamp > day_ago
                ),
            },
        }

    # -- passwords --------------------------------------------------------

    @staticmethod
    def assess_password_strength(password: str) -> Dict[str, Any]:
        score = 0
        suggestions = []

        if len(password) >= 8:
            score += 25
        else:
            suggestions.append("Use at least 8 characters")
        if len(password) >= 12:
            score += 25
        else:
            suggestions.append("Use at least 12 characters for better security")
        if re.search(r"[a-z]", password):
            score += 10
        else:
            suggestions.append("Include lowercase letters")
        if re.search(r"[A-Z]", password):
            score += 10
        else:
            suggestions.append("Include uppercase letters")
        if re.search(r"\d", password):
            score += 10
        else:
            suggestions.append("Include numbers")
        if re.search(r"[!@#$%^&*(),.?\":{}|<>]", password):
            score += 15
        else:
            suggestions.append("Include special characters")
        if not re.search(r"(.)\1{2,}", password):
            score += 5
        else:
            suggestions.append("Avoid repeating characters")

        if score < 40:
            strength = "weak"
        elif score < 70:
            strength = "medium"
        elif score < 90:
            strength = "strong"
        else:
            strength = "very_strong"
        return {"score": score, "strength": strength, "suggestions": suggestions}


class SecurityAuditMiddleware(BaseHTTPMiddleware):
    """Rate-limits and records every inbound request; independent of the domain flow."""

    async def dispatch(self, request: Request, call_next):
        audit: SecurityAuditService = request.app.state.security_audit
        ip = request.client.host if request.client else "unknown"
        user_agent = request.headers.get("user-agent", "unknown")
        path = request.url.path

        if not audit.check_rate_limit(ip, path):
            return JSONResponse(status_code=429, content={"error": "rate_limited", "detail": "Rate limit exceeded"})

        audit.log_security_event("api_access", "low", f"{request.method} {path}", ip, user_agent=user_agent)
        return await call_next(request)
