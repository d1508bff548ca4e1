"""
Upkeep - Service Layer

This package contains the update pipeline: release discovery, download,
snapshots, migrations, orchestration and rollback.
"""
