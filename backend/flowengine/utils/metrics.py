# /flowengine/utils/metrics.py

from prometheus_client import Counter, Histogram

# All Prometheus metrics for the flow engine live here.

# Driver
flow_runs_counter = Counter('flow_runs_total', 'Flow Driver invocations by final status', ['status'])
flow_steps_counter = Counter('flow_steps_total', 'Nodes executed by the Driver', ['node_type', 'status'])
flow_run_duration_histogram = Histogram('flow_run_duration_seconds', 'Wall time of a single Driver invocation')

# Integrations
integration_calls_counter = Counter('integration_calls_total', 'Webhook / AI / action calls', ['integration', 'status'])

# Persistence
session_store_operations = Counter('session_store_operations_total', 'Session store operations', ['operation', 'status'])
