"""
Test Suite for Stageflow

- Core model, field values and persistence
- Permission and validation rules
- Stage transitions and audit trail
- Channel and task services, HTTP routes
"""
