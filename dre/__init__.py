"""Declarative Reconciliation Engine (DRE).

Single-cluster control loop that reconciles declared workloads, services,
configuration sets and volume claims against running instances:
 - collision-checked configuration resolution
 - persistent volume claim binding
 - liveness/readiness probing with self-healing
 - surge-bounded rolling updates gated on readiness
 - service endpoint routing over Ready instances only
"""
