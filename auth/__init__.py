"""auth/ -- Authorization and session core for MedPortal.

  store.py         -- SQLAlchemy Core repository (principals, sessions, audit, notifications)
  audit.py         -- gap-free append-only audit log
  service.py       -- Credential & Session Store (register, login, resolve, revoke, rotate)
  policy.py        -- Authorization Policy Engine (static role x operation matrix)
  mediator.py      -- Request Mediator (authenticate -> authorize -> handle -> audit, bulk)
  notifications.py -- in-app notification outbox

Layer rule: auth/ imports from core/ and third-party libraries only.
It does NOT import from api/ or clinic/.
api/ imports from auth/, not the other way around.
"""
