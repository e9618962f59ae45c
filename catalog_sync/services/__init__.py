"""Business logic services.

Services contain all sync logic and are called by the operator scripts.
Services should be deterministic when possible and accept dependencies explicitly
(client, session factory, clock, sleep) so tests can substitute them.
"""
