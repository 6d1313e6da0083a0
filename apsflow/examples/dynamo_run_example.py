#!/usr/bin/env python3
"""
apsflow Example - Dynamo graph against a Revit model, end to end

Provisions everything the activity needs, uploads run.rvt and run.dyn,
runs one workitem and prints signed download links for the results.

Run with: python apsflow/examples/dynamo_run_example.py run.rvt run.dyn DynamoBundle.zip

Credentials and names come from APS_* variables (or a .env file).
"""

import json
import logging
import sys
from pathlib import Path

from dotenv import load_dotenv

from apsflow import ApsClient, ApsError, ApsSettings, LoggingSink, to_run_request
from apsflow.dynamo import dumps, require_dynamo_filename, require_model_filename
from apsflow.settings import RESULT_FILE, RUN_REQ_FILE, RVT_RESULT_FILE


def section(title: str) -> None:
    print()
    print("=" * 60)
    print(title)
    print("=" * 60)


def main(rvt_path: str, dyn_path: str, bundle_path: str) -> int:
    load_dotenv()
    logging.basicConfig(level=logging.INFO, format="  %(message)s")
    rvt, dyn, bundle = Path(rvt_path), Path(dyn_path), Path(bundle_path)
    require_model_filename(rvt.name)
    require_dynamo_filename(dyn.name)

    client = ApsClient.from_settings(ApsSettings.from_env())
    sink = LoggingSink()
    bucket = client.settings.require("bucket_name").bucket_name

    section("1. Provision")
    client.da.set_nickname(client.settings.require("nickname").nickname)
    print(client.provisioner.ensure_bucket(bucket, sink).message)
    appbundle = client.provisioner.provision_appbundle(bundle.name, bundle.read_bytes(), sink)
    activity = client.provisioner.provision_activity(sink)
    print(f"AppBundle {appbundle.qualified_id} v{appbundle.version}")
    print(f"Activity  {activity.qualified_id} v{activity.version}")

    section("2. Inputs")
    stored = client.oss.upload_object(bucket, rvt.name, rvt.read_bytes(), sink=sink)
    run_request, summary = to_run_request(dyn.read_bytes())
    client.oss.upload_object(
        bucket, RUN_REQ_FILE, dumps(run_request).encode("utf-8"), content_type="application/json", sink=sink
    )
    print(f"Model URN: {stored.urn}")
    print(f"Graph: {summary.name} ({summary.nodes_count} nodes, {summary.connectors_count} connectors)")

    section("3. Workitem")
    try:
        result = client.workitems.run(sink=sink)
    except ApsError as e:
        print(json.dumps(e.to_dict("Run Workitem"), indent=2, default=str))
        return 1
    print(f"Workitem {result.workitem_id}: {result.status} after {result.attempts} status checks")

    section("4. Results")
    for key in (RESULT_FILE, RVT_RESULT_FILE):
        link = client.results.get_download_url(bucket, key, minutes=30)
        print(f"{key}: {link.url}")

    client.close()
    return 0


if __name__ == "__main__":
    if len(sys.argv) != 4:
        print(__doc__)
        sys.exit(2)
    sys.exit(main(*sys.argv[1:]))
