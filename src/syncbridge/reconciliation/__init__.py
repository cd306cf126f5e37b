"""Cross-system entity reconciliation.

Links the same real-world project across the CRM, project-management and
photo-documentation systems and keeps one mapping row per linked project.
"""
