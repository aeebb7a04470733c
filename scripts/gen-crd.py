#!/usr/bin/env python3
"""Generate the ClusterDetector CustomResourceDefinition manifest."""
import os
import sys
import yaml

GROUP = "replicate.jnytnai0613.github.io"
VERSION = "v1"
KIND = "ClusterDetector"
PLURAL = "clusterdetectors"

PRINTER_COLUMNS = [
    ("CONTEXT", ".spec.context"),
    ("CLUSTER", ".spec.cluster"),
    ("USER", ".spec.user"),
    ("CLUSTERSTATUS", ".status.clusterstatus"),
]


def string_props(*names):
    return {n: {"type": "string"} for n in names}


def build_crd() -> dict:
    schema = {
        "type": "object",
        "description": "ClusterDetector tracks the liveness of one remote cluster context",
        "properties": {
            "apiVersion": {"type": "string"},
            "kind": {"type": "string"},
            "metadata": {"type": "object"},
            "spec": {"type": "object", "properties": string_props("context", "cluster", "user")},
            "status": {
                "type": "object",
                "properties": {"clusterstatus": {"type": "string", "enum": ["Running", "Unknown"]}},
            },
        },
    }
    return {
        "apiVersion": "apiextensions.k8s.io/v1",
        "kind": "CustomResourceDefinition",
        "metadata": {"name": f"{PLURAL}.{GROUP}"},
        "spec": {
            "group": GROUP,
            "names": {
                "kind": KIND,
                "listKind": f"{KIND}List",
                "plural": PLURAL,
                "singular": KIND.lower(),
            },
            "scope": "Namespaced",
            "versions": [{
                "name": VERSION,
                "served": True,
                "storage": True,
                "subresources": {"status": {}},
                "additionalPrinterColumns": [
                    {"name": name, "type": "string", "jsonPath": path} for name, path in PRINTER_COLUMNS
                ],
                "schema": {"openAPIV3Schema": schema},
            }],
        },
    }


def main():
    out_path = sys.argv[1] if len(sys.argv) > 1 else "deploy/crd.yaml"

    os.makedirs(os.path.dirname(out_path) or ".", exist_ok=True)
    with open(out_path, "w") as f:
        yaml.safe_dump(build_crd(), f, sort_keys=False)

    print(f"Generated {out_path}")


if __name__ == "__main__":
    main()
