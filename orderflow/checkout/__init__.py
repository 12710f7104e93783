"""
Checkout saga: request/result types, collaborator ports, the orchestrator
(:mod:`orderflow.checkout.orchestrator`) and the compensation path
(:mod:`orderflow.checkout.compensation`).
"""
