from prometheus_client import start_http_server, Counter
import threading

from .logger import log

# Metrics
TOOL_CALLS = Counter("test_agent_tool_calls_total", "Tool invocations", ["tool"])
TOKENS_USED = Counter("test_agent_tokens_total", "Model tokens consumed", ["model", "kind"])
BUDGET_EXCEEDED = Counter("test_agent_budget_exceeded_total", "Budget checks that failed", ["budget"])
RETRY_ATTEMPTS = Counter("test_agent_retry_attempts_total", "Retried attempts", ["category"])
LOCATION_OUTCOMES = Counter("test_agent_element_location_total", "Element location outcomes", ["status"])
VERIFICATION_OUTCOMES = Counter("test_agent_verification_total", "Verification outcomes", ["outcome"])

_metrics_server_started = False
_metrics_lock = threading.Lock()


def start_metrics_server(port: int):
    global _metrics_server_started
    with _metrics_lock:
        if _metrics_server_started:
            return
        start_http_server(port)
        _metrics_server_started = True
        log("INFO", "metrics_server_started", f"Prometheus metrics server started on port {port}", port=port)
