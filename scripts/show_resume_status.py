#!/usr/bin/env python3
"""Print discovery and download resume status for an interval log."""

from __future__ import annotations

import argparse
import os
from pathlib import Path

from flickr_crawler.checkpoint import CheckpointStore, checkpoint_path_for, plan_downloads, read_interval_log
from flickr_crawler.models import IntervalFormatError
from flickr_crawler.scheduler import ChunkDirectory


def main() -> None:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("interval_log_file", type=Path)
    parser.add_argument("data_dir", type=Path, nargs="?", default=None)
    parser.add_argument("--state-dir", default=os.getenv("STATE_DIR", "state"))
    args = parser.parse_args()

    checkpoint = CheckpointStore(checkpoint_path_for(Path(args.state_dir), args.interval_log_file))
    print(f"Interval log: {args.interval_log_file}")
    print(f"Checkpoint: {checkpoint.path}")
    try:
        intervals = read_interval_log(args.interval_log_file)
        last = checkpoint.load()
    except IntervalFormatError as exc:
        print(f"ERROR\t{exc}")
        return
    if not intervals:
        print("No intervals discovered yet.")
        return

    skipped = sum(1 for interval in intervals if interval.is_skip_marker)
    plan = plan_downloads(intervals, last)
    print("intervals\tskip_markers\tresults\tpages\tdiscovered_down_to")
    print(
        f"{len(intervals)}\t{skipped}\t{sum(i.result_count for i in intervals)}\t"
        f"{sum(i.page_count for i in intervals)}\t{intervals[-1].min_date}"
    )
    print("last_downloaded\tintervals_remaining\tpages_remaining")
    print(f"{last.to_line() if last else '-'}\t{len(plan.queue)}\t{plan.total_pages}")
    if args.data_dir is not None:
        chunks = ChunkDirectory(args.data_dir)
        print(f"current_chunk\t{chunks.path}\t{chunks.file_count()} files")


if __name__ == "__main__":
    main()
