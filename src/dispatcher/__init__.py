"""Issue dispatcher turning tracked GitLab issues into agent containers.

This package provides:
- Lifecycle label state machine (TODO → WIP → CONFIRM NEEDED → DONE)
- Per-project exclusive issue scheduling backed by PostgreSQL row locks
- Bounded retry with linear backoff and escalation to REJECT
- A polling orchestrator driving discovery, provisioning and label sweeps
- GitLab API, container provisioning and task delegation clients
"""
