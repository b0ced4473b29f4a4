"""auth/ -- Identity and session security engine for PNIT.

Components (leaves first): PasswordHasher, EncryptionManager, RateLimiter,
AccountLockoutGuard, SecurityAuditLog, SessionManager, SecretStore. AuthService
composes them into the register/login/refresh/logout/password-reset contract.

Layer rule: auth/ imports only core/ + stdlib + third-party libraries.
It does NOT import from api/. api/ imports from auth/, not the other way around.
"""
