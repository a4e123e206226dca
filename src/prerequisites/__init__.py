"""Idempotent provisioning of foundational resources.

Accounts, organizational units, IAM roles, KMS keys and the account
alias are created exactly once and reconciled on re-runs.
"""
