"""
Request security gates and account protection.

Rate limiting, brute-force protection, server-side sessions with CSRF tokens,
the account lock state machine and the admin security dashboards.
"""
