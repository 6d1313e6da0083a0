"""
Drive a running service through the whole Dynamo-on-Revit round trip.

    PYTHONPATH=. python tools/demo_workflow.py run.rvt run.dyn [bundle.zip]

Progress lines of the session are printed after every step.
"""

import json, sys, uuid
import requests

BASE = "http://127.0.0.1:3000"
SESSION = uuid.uuid4().hex
seen = 0


def show(label, resp):
    global seen
    print(f"{label}: {resp.status_code}")
    if resp.status_code >= 400:
        print(json.dumps(resp.json(), indent=2))
    progress = requests.get(f"{BASE}/api/progress/{SESSION}", params={"since": seen}).json()
    for event in progress["events"]:
        print("   ", event["message"])
    seen = progress["lastSeq"]
    resp.raise_for_status()
    return resp.json()


def upload(path, file_type):
    with open(path, "rb") as f:
        return requests.post(
            BASE + "/api/aps/upload/single",
            files={"file": (path.rsplit("/", 1)[-1], f)},
            data={"fileType": file_type, "sessionId": SESSION},
        )


if __name__ == "__main__":
    rvt, dyn = sys.argv[1], sys.argv[2]
    body = {"sessionId": SESSION}

    show("token", requests.post(BASE + "/api/aps/token", json=body))
    show("nickname", requests.post(BASE + "/api/aps/nickname", json=body))
    show("bucket", requests.post(BASE + "/api/aps/bucket", json=body))
    if len(sys.argv) > 3:
        with open(sys.argv[3], "rb") as f:
            show("appbundle", requests.post(
                BASE + "/api/aps/appbundle",
                files={"appBundleFile": (sys.argv[3].rsplit("/", 1)[-1], f)},
                data={"sessionId": SESSION},
            ))
    show("activity", requests.post(BASE + "/api/aps/activity", json=body))
    show("upload rvt", upload(rvt, "rvt"))

    with open(dyn, "rb") as f:
        preview = show("convert", requests.post(
            BASE + "/api/aps/upload/dyn-to-json-preview",
            files={"dynFile": ("run.dyn", f)},
            data={"sessionId": SESSION},
        ))
    show("run.json", requests.post(
        BASE + "/api/aps/upload/json-content",
        json={"sessionId": SESSION, "jsonContent": preview["jsonContent"]},
    ))

    result = show("workitem", requests.post(
        BASE + "/api/aps/workitem", json={"sessionId": SESSION, "rvtFileName": "run.rvt"}
    ))
    print("Workitem:", json.dumps(result, indent=2))
    print("result.json:", show("download", requests.get(BASE + "/api/aps/download/result-json"))["downloadUrl"])
