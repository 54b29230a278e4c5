"""
Workflow package: the durable daily-run state machine.

- models: run-scoped and durable record shapes
- errors: error taxonomy and reason codes
- retry: the shared retry policy
- run_state: run record persistence, stage transitions, per-date lock
- orchestrator: stage graph, fan-out, resumption and triggers
"""
