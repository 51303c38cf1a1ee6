#!/usr/bin/env python3
"""
Example demonstrating unionfs upstream selection.
Shows how to:
1. Configure a union of local directories with per-category policies
2. Ask the union where to create, modify and read objects
3. Switch policies at runtime and export Prometheus metrics
"""

import os
import tempfile
import logging

from unionfs.config import UnionConfig
from unionfs.errors import NoUpstreamsFoundError
from unionfs.union import UnionFs
from unionfs.upstream import MemoryUpstream, background

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def main():
    root = tempfile.mkdtemp(prefix="unionfs_demo_")
    for branch in ("ssd", "hdd", "archive"):
        os.makedirs(os.path.join(root, branch, "media"))
    with open(os.path.join(root, "hdd", "media", "song.flac"), "wb") as f:
        f.write(b"\0" * 1024)

    config = UnionConfig(
        upstreams=[
            f"ssd={os.path.join(root, 'ssd')}",
            f"hdd={os.path.join(root, 'hdd')}",
            f"archive={os.path.join(root, 'archive')}:ro",
        ],
        action_policy="epall",
        create_policy="eplfs",
        search_policy="eplno",
        min_free_space=0,
        cache_time=30,
    )
    union = UnionFs(config=config)
    ctx = background()

    logger.info(f"Create media/new.flac on: {[u.name for u in union.create(ctx, 'media/new.flac')]}")
    logger.info(f"Modify media/song.flac on: {[u.name for u in union.action(ctx, 'media/song.flac')]}")
    logger.info(f"Read media/song.flac from: {union.search(ctx, 'media/song.flac').name}")

    # Entries listed elsewhere can be handed over directly
    entries = union.entries(ctx, "media")
    logger.info(f"'media' exists on {[e.upstream.name for e in entries]}, "
                f"reading it from {union.search_entries(ctx, entries).upstream.name}")

    union.update_config(UnionConfig(upstreams=config.upstreams, create_policy="eplno", search_policy="epff"))
    logger.info(f"Create media/next.flac on: {[u.name for u in union.create(ctx, 'media/next.flac')]}")

    # Simulated upstreams make capacity exhaustion easy to show
    tiny = [
        MemoryUpstream("tiny-a", files=["x"], free_space=10, min_free_space=20),
        MemoryUpstream("tiny-b", files=["x"], free_space=5, min_free_space=10),
    ]
    crowded = UnionFs(tiny, config=UnionConfig(create_policy="eplfs"), registry=None)
    try:
        crowded.create(ctx, "y")
    except NoUpstreamsFoundError as e:
        logger.info(f"Expected failure: {e}")

    union.export_metrics(ctx)
    union.start_prometheus_server(port=8000)
    logger.info("View metrics at http://localhost:8000/metrics")


if __name__ == "__main__":
    main()
