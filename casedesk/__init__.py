"""
Casedesk - case management API for agent-submitted, cited outputs.
"""
