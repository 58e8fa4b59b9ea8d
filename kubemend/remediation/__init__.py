"""Remediation core: matching, owner grouping, cooldowns, dispatch and status."""
