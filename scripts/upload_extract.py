"""
Upload a map extract to the bucket/key the routing service reads on startup.

Usage:
    python scripts/upload_extract.py <extract.osm.pbf>

Bucket and key come from ROUTING_DATA_BUCKET / ROUTING_DATA_KEY.
"""

from __future__ import annotations

import os
import sys
from pathlib import Path

import boto3

REGION = os.getenv("ROUTING_REGION", os.getenv("AWS_REGION", "eu-west-2"))
DATA_BUCKET = os.getenv("ROUTING_DATA_BUCKET", "")
DATA_KEY = os.getenv("ROUTING_DATA_KEY", "")


def main():
    if len(sys.argv) < 2:
        print("Usage: python scripts/upload_extract.py <extract.osm.pbf>")
        sys.exit(1)
    if not DATA_BUCKET or not DATA_KEY:
        print("ERROR: set ROUTING_DATA_BUCKET and ROUTING_DATA_KEY first.")
        sys.exit(1)

    extract = Path(sys.argv[1])
    if not extract.is_file():
        print(f"ERROR: File not found: {extract}")
        sys.exit(1)

    s3 = boto3.client("s3", region_name=REGION)
    size_mb = extract.stat().st_size / (1024 * 1024)
    print(f"Uploading {extract} ({size_mb:.1f} MiB) -> s3://{DATA_BUCKET}/{DATA_KEY}")
    s3.upload_file(str(extract), DATA_BUCKET, DATA_KEY)

    print("Upload complete.")
    print("Running tasks pick up the new extract on their next start; force one with:")
    print("  aws ecs update-service --force-new-deployment --cluster <cluster> --service <service>")


if __name__ == "__main__":
    main()
