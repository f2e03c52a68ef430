"""
Walk one batch through its whole lifecycle against a running API.
Run:
    python scripts/simulate_supply_chain.py [API_BASE]
"""
import base64
import datetime
import json
import secrets
import sys

import requests

API = sys.argv[1] if len(sys.argv) > 1 else "http://localhost:8000"


def new_identity() -> str:
    return "0x" + secrets.token_hex(20)


def post(path, body):
    r = requests.post(f"{API}{path}", json=body)
    print(path, r.status_code, r.text)
    r.raise_for_status()
    return r.json()


def main():
    farmer, carrier, buyer = new_identity(), new_identity(), new_identity()
    for who, role in ((farmer, "producer"), (carrier, "carrier"), (buyer, "purchaser")):
        post("/api/roles/grant", {"identity": who, "role": role, "granted_by": who})

    image = base64.b64decode(
        "iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAYAAAAfFcSJAAAADUlEQVR42mNk+M9QDwADhgGAWjR9awAAAABJRU5ErkJggg=="
    )
    img = requests.post(f"{API}/api/metadata", files={"file": ("lettuce.png", image, "image/png")})
    img.raise_for_status()
    doc = json.dumps({
        "name": "Hydro Lettuce LOT",
        "description": "simulated batch",
        "image": img.json()["uri"],
        "cropType": "Hydro Lettuce",
        "quantity": 40,
        "originFarm": "Baan Mae Rim Farm",
    }).encode()
    up = requests.post(f"{API}/api/metadata", params={"kind": "crop-batch-metadata"},
                       files={"file": ("metadata.json", doc, "application/json")})
    up.raise_for_status()
    print("metadata:", up.json())

    batch = post("/api/batches", {
        "minter": farmer,
        "crop_type": "Hydro Lettuce",
        "quantity": 40,
        "origin_farm": "Baan Mae Rim Farm",
        "harvest_date": str(datetime.date.today()),
        "notes": "simulated",
        "metadata_ref": up.json()["uri"],
    })
    bid = batch["id"]

    post(f"/api/batches/{bid}/provenance", {"producer": farmer, "location": "Mae Rim, Chiang Mai"})
    post(f"/api/batches/{bid}/transfer", {
        "from_identity": farmer, "to_identity": carrier, "next_state": "in_transit",
        "location": "Cold Truck A",
    })
    post(f"/api/batches/{bid}/transfer", {
        "from_identity": carrier, "to_identity": buyer, "next_state": "delivered",
        "location": "Warehouse CM",
    })
    post(f"/api/batches/{bid}/consume", {"actor": buyer, "location": "Restaurant"})

    r = requests.get(f"{API}/api/batches/{bid}/history")
    for step in r.json():
        print(step["sequence"], step["state"], step["actor"], step["location"])


if __name__ == "__main__":
    main()
