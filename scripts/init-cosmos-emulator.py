#!/usr/bin/env python3
"""
Initialize Cosmos DB Emulator with the EvalShield database and containers.

Creates the evaluations and enrollments containers used by
CosmosDocumentStore and prints a fresh ENCRYPTION_MASTER_KEY and RECEIPT_SECRET
for the local .env file. Run this once after starting the emulator.

Prerequisites:
1. Start the Cosmos DB Emulator (it runs on https://localhost:8081)
2. Run this script: python scripts/init-cosmos-emulator.py

The emulator uses a well-known key that is safe for local development only.
"""

import asyncio
import secrets
import sys
from pathlib import Path

# Add backend to path
backend_path = Path(__file__).parent.parent / "src" / "backend"
sys.path.insert(0, str(backend_path))

from azure.cosmos import PartitionKey
from azure.cosmos.aio import CosmosClient

from core.encryption import generate_master_key
from db.document_store import ENROLLMENTS_CONTAINER, EVALUATIONS_CONTAINER

EMULATOR_ENDPOINT = "https://localhost:8081"
EMULATOR_KEY = "C2y6yDjf5/R+ob0N8A7Cgv30VRDJIWEHLM+4QDU5DE2nQ9nDuVTqobD4b8mGGyPMbIZnqyMsEcaGQy67XIw/Jw=="
DATABASE_NAME = "evalshield"

# Evaluations are read per teacher; enrollments are claimed by id
CONTAINERS = [
    {"name": EVALUATIONS_CONTAINER, "partition_key": "/teacher_id"},
    {"name": ENROLLMENTS_CONTAINER, "partition_key": "/id"},
]


async def init_emulator() -> None:
    print(f"Connecting to Cosmos DB Emulator at {EMULATOR_ENDPOINT}...")

    # Emulator uses a self-signed certificate
    client = CosmosClient(
        url=EMULATOR_ENDPOINT,
        credential=EMULATOR_KEY,
        connection_verify=False,
    )

    try:
        database = await client.create_database_if_not_exists(id=DATABASE_NAME)
        print(f"  database '{DATABASE_NAME}' ready")

        for container_def in CONTAINERS:
            await database.create_container_if_not_exists(
                id=container_def["name"],
                partition_key=PartitionKey(path=container_def["partition_key"]),
            )
            print(f"  container '{container_def['name']}' ready (partition: {container_def['partition_key']})")

        print("\nAdd to src/backend/.env:")
        print("  STORE_BACKEND=cosmos")
        print(f"  AZURE_COSMOS_CONNECTION_STRING=AccountEndpoint={EMULATOR_ENDPOINT}/;AccountKey={EMULATOR_KEY};")
        print("  AZURE_COSMOS_DISABLE_SSL=true")
        print(f"  ENCRYPTION_MASTER_KEY={generate_master_key()}")
        print(f"  RECEIPT_SECRET={secrets.token_hex(32)}")
    except Exception as e:
        print(f"\nError: {e}")
        print("Make sure the emulator is running: https://localhost:8081/_explorer/index.html")
        raise
    finally:
        await client.close()


if __name__ == "__main__":
    asyncio.run(init_emulator())
