"""Event-driven mission orchestration: triggers, reactions, missions, leases, workers."""
