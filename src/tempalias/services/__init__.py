"""tempalias service layer.

This package contains the alias lifecycle engine and its collaborators:
- provider_client: Mail-forwarding provider REST integration
- storage: Local persistent key-value store (memory or SQLAlchemy)
- code_patterns / code_registry: Confirmation code extraction and registry
- notifications: Serialized display of transient notifications
- lifecycle: Alias creation, expiry and purge
- session: Composition root used by the presentation layer

Modules are imported directly; the lifecycle manager and the worker
deletion timers reference each other, so nothing is re-exported here.
"""
