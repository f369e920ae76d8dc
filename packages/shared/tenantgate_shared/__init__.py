"""Shared authorization model for TenantGate: roles, permission tables, decision procedure."""
