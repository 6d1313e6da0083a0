#!/usr/bin/env python3
"""
apsflow Command Line Interface

Usage:
    apsflow token
    apsflow nickname get|set <name>
    apsflow bucket ensure|list|clear|delete|cleanup
    apsflow upload <file> [--as <object key>]
    apsflow convert <run.dyn> [--output run.json] [--upload]
    apsflow appbundle <bundle.zip>
    apsflow activity
    apsflow run [--rvt run.rvt] [--no-wait]
    apsflow download result-json|result-rvt
    apsflow translate <object key>
    apsflow status <urn>

Credentials and resource names come from APS_* environment variables (a
.env file in the working directory is loaded first). Every command prints
JSON to stdout. Failures print the structured error to stderr and exit 1.
"""

import argparse
import json
import logging
import sys
import time
from pathlib import Path

from dotenv import load_dotenv


def print_json(data):
    print(json.dumps(data, indent=2, default=str))


def read_bytes(path: str) -> bytes:
    with open(path, 'rb') as f:
        return f.read()


def make_client():
    from apsflow import ApsClient, ApsSettings
    return ApsClient.from_settings(ApsSettings.from_env())


def make_sink(args):
    from apsflow.progress import LoggingSink, NULL_SINK
    return LoggingSink() if args.verbose else NULL_SINK


def cmd_token(args):
    """Fetch a 2-legged token."""
    client = make_client()
    token = client.tokens.get_token()
    print_json({
        "access_token": token.access_token,
        "expires_in": token.expires_in(time.time()),
    })


def cmd_nickname(args):
    client = make_client()
    if args.action == "get":
        print_json({"nickname": client.da.get_nickname()})
    else:
        if not args.name:
            raise SystemExit("nickname set requires a name")
        client.da.set_nickname(args.name)
        print_json({"nickname": args.name})


def cmd_bucket(args):
    """Bucket housekeeping against APS_BUCKET_NAME."""
    client = make_client()
    sink = make_sink(args)
    bucket = client.settings.require("bucket_name").bucket_name

    if args.action == "ensure":
        print_json(client.provisioner.ensure_bucket(bucket, sink).to_dict())
    elif args.action == "list":
        print_json(client.oss.list_objects(bucket))
    elif args.action == "clear":
        print_json(client.oss.clear_bucket(bucket, sink).to_dict())
    elif args.action == "delete":
        print_json({"bucket": bucket, "deleted": client.oss.delete_bucket(bucket)})
    elif args.action == "cleanup":
        print_json(client.oss.cleanup_bucket(bucket, client.settings.client_id, sink).to_dict())


def cmd_upload(args):
    from apsflow.dynamo import require_dynamo_filename, require_model_filename
    from apsflow.settings import RVT_FILE

    key = args.object_key or Path(args.file).name
    if key.lower().endswith(".rvt"):
        require_model_filename(key)
    elif key.lower().endswith(".dyn"):
        require_dynamo_filename(key)
    client = make_client()
    bucket = client.settings.require("bucket_name").bucket_name
    stored = client.oss.upload_object(bucket, key, read_bytes(args.file), sink=make_sink(args))
    out = stored.to_dict()
    if key == RVT_FILE and args.translate:
        out["translation"] = client.derivative.translate(stored.urn)
    print_json(out)


def cmd_convert(args):
    """Convert run.dyn into the run.json run request."""
    from apsflow import dynamo
    from apsflow.settings import RUN_REQ_FILE

    dynamo.require_dynamo_filename(Path(args.file).name)
    run_request, summary = dynamo.to_run_request(read_bytes(args.file))
    text = dynamo.dumps(run_request)
    out = {"dynamo_properties": summary.to_dict()}

    if args.output:
        with open(args.output, 'w') as f:
            f.write(text)
        out["output"] = args.output
    if args.upload:
        client = make_client()
        bucket = client.settings.require("bucket_name").bucket_name
        stored = client.oss.upload_object(
            bucket, RUN_REQ_FILE, text.encode("utf-8"), content_type="application/json", sink=make_sink(args)
        )
        out["uploaded"] = stored.to_dict()
    if not args.output and not args.upload:
        out["jsonContent"] = text
    print_json(out)


def cmd_appbundle(args):
    client = make_client()
    result = client.provisioner.provision_appbundle(Path(args.file).name, read_bytes(args.file), make_sink(args))
    print_json(result.to_dict())


def cmd_activity(args):
    client = make_client()
    print_json(client.provisioner.provision_activity(make_sink(args)).to_dict())


def cmd_run(args):
    """Run one workitem, or print the id and return with --no-wait."""
    from apsflow.dynamo import require_model_filename
    from apsflow.workitems import default_slots

    require_model_filename(args.rvt)
    client = make_client()
    sink = make_sink(args)
    slots = default_slots(args.rvt)
    if args.no_wait:
        print_json({"workitemId": client.workitems.submit(slots, sink=sink)})
        return
    print_json(client.workitems.run(slots, sink=sink).to_dict())


def cmd_download(args):
    from apsflow.settings import RESULT_FILE, RVT_RESULT_FILE

    client = make_client()
    bucket = client.settings.require("bucket_name").bucket_name
    key = RESULT_FILE if args.which == "result-json" else RVT_RESULT_FILE
    link = client.results.get_download_url(bucket, key, minutes=args.minutes, include_size=(key == RVT_RESULT_FILE))
    print_json(link.to_dict())


def cmd_translate(args):
    from apsflow.util import object_address, urnify

    client = make_client()
    bucket = client.settings.require("bucket_name").bucket_name
    urn = urnify(object_address(bucket, args.object_key))
    print_json({"urn": urn, "job": client.derivative.translate(urn)})


def cmd_status(args):
    client = make_client()
    print_json(client.derivative.translation_status(args.urn))


COMMANDS = {
    "token": cmd_token,
    "nickname": cmd_nickname,
    "bucket": cmd_bucket,
    "upload": cmd_upload,
    "convert": cmd_convert,
    "appbundle": cmd_appbundle,
    "activity": cmd_activity,
    "run": cmd_run,
    "download": cmd_download,
    "translate": cmd_translate,
    "status": cmd_status,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="apsflow",
        description="Run Dynamo graphs on Revit models with APS Design Automation",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  apsflow bucket ensure
  apsflow upload run.rvt
  apsflow convert run.dyn --upload
  apsflow run
  apsflow download result-json
        """
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Log progress to stderr")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    subparsers.add_parser("token", help="Fetch a 2-legged token")

    nick_parser = subparsers.add_parser("nickname", help="Get or set the Design Automation nickname")
    nick_parser.add_argument("action", choices=["get", "set"])
    nick_parser.add_argument("name", nargs="?")

    bucket_parser = subparsers.add_parser("bucket", help="Bucket housekeeping")
    bucket_parser.add_argument("action", choices=["ensure", "list", "clear", "delete", "cleanup"])

    upload_parser = subparsers.add_parser("upload", help="Upload a file to the bucket")
    upload_parser.add_argument("file")
    upload_parser.add_argument("--as", dest="object_key", help="Object key (defaults to the file name)")
    upload_parser.add_argument("--translate", action="store_true", help="Start a viewer translation of run.rvt")

    convert_parser = subparsers.add_parser("convert", help="Convert run.dyn to run.json")
    convert_parser.add_argument("file")
    convert_parser.add_argument("-o", "--output", help="Write run.json here")
    convert_parser.add_argument("--upload", action="store_true", help="Upload run.json to the bucket")

    bundle_parser = subparsers.add_parser("appbundle", help="Create or version the AppBundle")
    bundle_parser.add_argument("file", help="AppBundle zip")

    subparsers.add_parser("activity", help="Create or version the Activity")

    run_parser = subparsers.add_parser("run", help="Run a workitem")
    run_parser.add_argument("--rvt", default="run.rvt", help="Model object key")
    run_parser.add_argument("--no-wait", action="store_true", help="Submit and return the workitem id")

    dl_parser = subparsers.add_parser("download", help="Signed download URL for a result")
    dl_parser.add_argument("which", choices=["result-json", "result-rvt"])
    dl_parser.add_argument("-m", "--minutes", type=int, default=60)

    tr_parser = subparsers.add_parser("translate", help="Start a viewer translation")
    tr_parser.add_argument("object_key")

    st_parser = subparsers.add_parser("status", help="Translation status of a model")
    st_parser.add_argument("urn")

    return parser


def main(argv=None) -> int:
    from apsflow.errors import ApsError

    load_dotenv()
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command not in COMMANDS:
        parser.print_help()
        return 0

    logging.basicConfig(level=logging.INFO if args.verbose else logging.WARNING, stream=sys.stderr)
    try:
        COMMANDS[args.command](args)
    except ApsError as e:
        print(json.dumps(e.to_dict(args.command), indent=2, default=str), file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
