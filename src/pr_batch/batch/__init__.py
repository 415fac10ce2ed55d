"""Sequential batch driver for agent-implemented units.

Why strictly sequential?
~~~~~~~~~~~~~~~~~~~~~~~~
Each unit branches from the lineage of previously *succeeded* units that share its
destination-path parent, so a unit cannot be planned before every earlier unit has finished.
Running units in parallel would require locking the lineage index and the rollback ledger
per unit, or sharding the batch by parent path. The only concurrent piece is the heartbeat
thread that reports on a long agent call without touching control flow.
"""
