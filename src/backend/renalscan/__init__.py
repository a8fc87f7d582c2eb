"""
RenalScan: kidney CT scan classification via a multimodal language model.

Packages:
  - agent:    the diagnosis orchestrator (state machine over model calls)
  - tools:    one tool per model call type (classify, explain, refine, analytics)
  - prompts:  deterministic prompt builder and decision rules
  - services: inference adapter, schema validator, image resolution
  - models:   domain models, response shapes, error taxonomy, result values
  - api:      FastAPI routers
"""
