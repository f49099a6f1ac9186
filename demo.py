#!/usr/bin/env python3
"""
relgraph Demo - Shows checks and expansions over a document model.

This demo uses the service directly with the in-memory tuple store.

Run: python demo.py
"""

import asyncio
import json
from pathlib import Path

from authz.relgraph_server.engine import resolve_subjects
from authz.relgraph_server.schema import load_model, reset_registry
from authz.relgraph_server.service import AuthzService, CheckRequest, ExpandRequest
from authz.relgraph_server.store import InMemoryTupleStore, ObjectRef, SubjectRef

MODEL_PATH = Path(__file__).parent / "examples" / "document_model.yaml"


async def main() -> dict:
    print("=" * 60)
    print("relgraph Demo - Checks and Expansions")
    print("=" * 60)

    # 1. Publish the model
    print("\n[Step 1] Publishing model...")
    store = InMemoryTupleStore()
    service = AuthzService(store)
    registry = service.publish_model(load_model(MODEL_PATH.read_text()))
    print(f"  - Types: {[t.name for t in registry.types()]}")
    print(f"  - Fingerprint: {registry.fingerprint[:23]}...")

    # 2. Write tuples (as the external writer would)
    print("\n[Step 2] Writing tuples...")
    before = await store.write(
        [
            "domain:acme#member@user:alice",
            "document:doc1#viewer@domain:acme#member",
            "document:doc1#owner@user:bob",
        ]
    )
    print(f"  - Snapshot: {before.token}")

    doc = ObjectRef("document", "doc1")
    alice = SubjectRef("user", "alice")
    bob = SubjectRef("user", "bob")
    results = {}

    # 3. Checks
    print("\n[Step 3] Checking access...")
    for label, relation, subject in (
        ("alice viewer", "viewer", alice),
        ("bob viewer", "viewer", bob),
        ("bob owner", "owner", bob),
    ):
        result = await service.check(CheckRequest(doc, relation, subject, before))
        results[label] = result.allowed
        print(f"  - {label}: {result.allowed}  ({result.metadata.dispatch_count} dispatches)")

    # 4. Expand
    print("\n[Step 4] Expanding document:doc1#viewer...")
    expanded = await service.expand(ExpandRequest(doc, "viewer", before))
    print(json.dumps(expanded.tree.to_dict(), indent=2))
    results["viewers"] = sorted(str(s) for s in resolve_subjects(expanded.tree))

    # 5. Remove alice from the domain; the old snapshot still sees her
    print("\n[Step 5] Removing alice from domain:acme...")
    after = await store.write(deletes=["domain:acme#member@user:alice"])
    for snapshot in (before, after):
        result = await service.check(CheckRequest(doc, "viewer", alice, snapshot))
        results[f"alice viewer @ {snapshot.token}"] = result.allowed
        print(f"  - alice viewer @ {snapshot.token}: {result.allowed}")

    print("\n" + "=" * 60)
    print("Demo completed successfully!")
    print("=" * 60)
    reset_registry()
    return results


if __name__ == "__main__":
    asyncio.run(main())
