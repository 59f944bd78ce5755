"""auth/ -- Credential and session lifecycle core for CredKeep.

Layer rule: auth/ imports only stdlib + third-party libraries, plus core/
for settings in the two modules that assemble things from configuration
(oauth.py, orchestrator.build_orchestrator). It does NOT import from api/.
api/ imports from auth/, not the other way around.
"""
