"""Job lifecycle: models, policy, retries, worker, and dispatch."""
