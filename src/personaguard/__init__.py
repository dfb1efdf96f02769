"""
PersonaGuard: input-validation firewall and static security auditor.

Every externally sourced string (persona bodies, metadata, search queries,
shared URLs) passes through the validators in ``personaguard.security``
before business logic may store or display it. ``personaguard.audit``
scans the platform's own source tree for vulnerability patterns.
"""

__version__ = "1.0.0"
