"""Wire types for the remediation backend.

Request body::

    {"issue": "...", "mode": "manual"}
    {"issue": "...", "mode": "automatic", "confidenceThreshold": 0.9, "maxRiskLevel": "medium"}

Response body::

    {
      "success": true,
      "data": {"result": {...}, "tool": "remediate", "executionTime": 1234.5},
      "error": {"code": "...", "message": "...", "details": {...}}
    }

``executionTime`` is reported in milliseconds.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from kubemend.models.policy import Mode


@dataclass(frozen=True)
class RemediationRequest:
    issue: str
    mode: str
    confidence_threshold: float | None = None
    max_risk_level: str = ""

    def to_payload(self) -> dict[str, Any]:
        """Serialise to the JSON body.  Thresholds are sent only in automatic mode."""
        payload: dict[str, Any] = {"issue": self.issue, "mode": self.mode}
        if self.mode == Mode.AUTOMATIC:
            if self.confidence_threshold is not None:
                payload["confidenceThreshold"] = self.confidence_threshold
            if self.max_risk_level:
                payload["maxRiskLevel"] = self.max_risk_level
        return payload


@dataclass(frozen=True)
class RemediationError:
    code: str = ""
    message: str = ""
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class RemediationResponse:
    """Parsed backend response."""

    success: bool
    result: dict[str, Any] | None = None
    tool: str = ""
    execution_time_ms: float = 0.0
    error: RemediationError | None = None
    raw_body: str = ""
    # True when the request never got an in-band answer from the backend.
    synthesized: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RemediationResponse:
        result: dict[str, Any] | None = None
        tool = ""
        execution_time = 0.0
        body_data = data.get("data")
        if isinstance(body_data, dict):
            raw_result = body_data.get("result")
            result = raw_result if isinstance(raw_result, dict) else None
            tool = str(body_data.get("tool") or "")
            try:
                execution_time = float(body_data.get("executionTime") or 0.0)
            except (TypeError, ValueError):
                execution_time = 0.0

        error: RemediationError | None = None
        raw_error = data.get("error")
        if isinstance(raw_error, dict):
            details = raw_error.get("details")
            error = RemediationError(
                code=str(raw_error.get("code") or ""),
                message=str(raw_error.get("message") or ""),
                details=details if isinstance(details, dict) else {},
            )

        return cls(
            success=bool(data.get("success", False)),
            result=result,
            tool=tool,
            execution_time_ms=execution_time,
            error=error,
        )

    @classmethod
    def failure(cls, code: str, message: str) -> RemediationResponse:
        """Synthesise a failed response for transport or HTTP-level errors."""
        return cls(success=False, error=RemediationError(code=code, message=message), synthesized=True)

    @classmethod
    def plain_text(cls, body: str) -> RemediationResponse:
        """A 2xx reply whose body is not JSON; the body becomes the result message."""
        return cls(success=True, result={"message": body} if body else None, raw_body=body)

    # ------------------------------------------------------------------
    # Derived views
    # ------------------------------------------------------------------

    @property
    def executed(self) -> bool:
        """True when the backend reports it actually ran commands."""
        if self.result is None:
            return False
        value = self.result.get("executed")
        return value if isinstance(value, bool) else False

    @property
    def execution_time_seconds(self) -> float:
        return self.execution_time_ms / 1000

    def result_message(self) -> str:
        if self.result is None:
            return "no result data"
        for key in ("message", "summary", "output"):
            value = self.result.get(key)
            if isinstance(value, str) and value:
                return value
        if self.execution_time_ms > 0:
            return f"remediation completed successfully ({self.execution_time_seconds:.2f}s)"
        return "remediation completed successfully"

    def error_message(self) -> str:
        if self.error is not None:
            if self.error.message:
                return self.error.message
            if self.error.code:
                return f"error code: {self.error.code}"
        return "unknown error"

    def summary(self) -> str:
        return self.result_message() if self.success else self.error_message()

    @property
    def confidence(self) -> float | None:
        return _as_float((self.result or {}).get("confidence"))

    @property
    def root_cause(self) -> str:
        analysis = (self.result or {}).get("analysis")
        if isinstance(analysis, dict):
            value = analysis.get("rootCause")
            if isinstance(value, str):
                return value
        return ""

    @property
    def analysis_confidence(self) -> float | None:
        analysis = (self.result or {}).get("analysis")
        if isinstance(analysis, dict):
            return _as_float(analysis.get("confidence"))
        return None

    @property
    def commands(self) -> list[str]:
        """Commands the backend ran (or recommends), in order."""
        remediation = (self.result or {}).get("remediation")
        if not isinstance(remediation, dict):
            return []
        actions = remediation.get("actions")
        if not isinstance(actions, list):
            return []
        out: list[str] = []
        for action in actions:
            if isinstance(action, dict):
                cmd = action.get("command")
                if isinstance(cmd, str) and cmd:
                    out.append(cmd)
        return out

    @property
    def validation_passed(self) -> bool | None:
        validation = (self.result or {}).get("validation")
        if isinstance(validation, dict):
            value = validation.get("success")
            if isinstance(value, bool):
                return value
        return None

    @property
    def actions_taken(self) -> int:
        results = (self.result or {}).get("results")
        return len(results) if isinstance(results, list) else 0

    @property
    def error_reason(self) -> str:
        if self.error is None:
            return ""
        value = self.error.details.get("reason")
        return value if isinstance(value, str) else ""


def _as_float(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int | float):
        return float(value)
    return None
