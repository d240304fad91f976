"""
SnapKeeper - tag-driven lifecycle policy for EBS volume snapshots.

Two independent, stateless passes run on a schedule:

    ┌──────────────┐   describe_volumes    ┌─────────────┐
    │ Backup pass  │──────────────────────▶│   Volumes   │  Backup=daily|monthly
    └──────┬───────┘                       └─────────────┘
           │ create_snapshot + create_tags
           ▼
    ┌──────────────┐  Frequency, Expires, Name
    │  Snapshots   │◀──────────────────────┐
    └──────────────┘                       │
           ▲ describe_snapshots            │
    ┌──────┴───────┐                       │
    │ Cleanup pass │── delete_snapshot ────┘  (Expires in the past)
    └──────────────┘

Invariants:
    - Resource tags are the only state; nothing is persisted locally
    - A volume's LastBackup tag is written only after its snapshot is tagged
    - Snapshots without an Expires tag are never deleted

How to change safely:
    - Tag names and values are a wire format shared with existing snapshots
    - Keep policy functions pure and pass "now" in explicitly
"""

from ._version import __version__

__all__ = ["__version__"]
