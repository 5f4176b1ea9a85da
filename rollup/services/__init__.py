"""
Scheduling layer.
Jobs wrap orchestrator units; the scheduler fires them on their triggers.
"""
