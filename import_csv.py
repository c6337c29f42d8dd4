#   Copyright 2026 UCP Authors
#
#   Licensed under the Apache License, Version 2.0 (the "License");
#   you may not use this file except in compliance with the License.
#   You may obtain a copy of the License at
#
#       http://www.apache.org/licenses/LICENSE-2.0
#
#   Unless required by applicable law or agreed to in writing, software
#   distributed under the License is distributed on an "AS IS" BASIS,
#   WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
#   See the License for the specific language governing permissions and
#   limitations under the License.

"""Seeds the marketplace database from CSV files.

Vendors, products, promo codes and shipping zones are read from `data_dir`.
Each table is cleared before its CSV is loaded; a missing CSV leaves its table
untouched.

Usage:
  uv run import_csv.py --database_path=... --data_dir=...
"""

import asyncio
import csv
import json
import logging
import os
from typing import Dict, List, Optional
from absl import app as absl_app
from absl import flags
import db
from db import Product
from db import PromoCode
from db import ShippingZone
from db import Vendor
from sqlalchemy import delete

FLAGS = flags.FLAGS
flags.DEFINE_string("database_path", "marketplace.db", "Path to SQLite DB")
flags.DEFINE_string(
    "data_dir",
    os.path.join(os.path.dirname(os.path.abspath(__file__)), "data"),
    "Directory containing vendors.csv, products.csv, promo_codes.csv and"
    " shipping_zones.csv",
)

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def _rows(name: str) -> Optional[List[Dict[str, str]]]:
  path = os.path.join(FLAGS.data_dir, name)
  if not os.path.exists(path):
    logger.info("Skipping %s (not found)", name)
    return None
  with open(path, "r", encoding="utf-8") as f:
    return list(csv.DictReader(f))


def _bool(value: Optional[str], default: bool = False) -> bool:
  if value is None or not value.strip():
    return default
  return value.strip().lower() in ("1", "true", "yes", "y")


def _int(value: Optional[str]) -> Optional[int]:
  return int(value) if value and value.strip() else None


async def import_csv_data() -> None:
  """Reads CSV files and populates the database."""
  await db.manager.init_db(FLAGS.database_path)

  try:
    async with db.manager.session_factory() as session:
      rows = _rows("vendors.csv")
      if rows is not None:
        logger.info("Importing vendors from CSV...")
        await session.execute(delete(Vendor))
        session.add_all(
            Vendor(
                id=row["id"],
                business_name=row["business_name"],
                verified=_bool(row.get("verified"), default=True),
                commission_rate=float(row.get("commission_rate") or 0),
                email=row.get("email") or None,
                phone=row.get("phone") or None,
                address_street=row.get("address_street") or None,
                address_city=row.get("address_city") or None,
                address_state=row.get("address_state") or None,
                address_country=row.get("address_country") or None,
            )
            for row in rows
        )

      rows = _rows("products.csv")
      if rows is not None:
        logger.info("Importing products from CSV...")
        await session.execute(delete(Product))
        session.add_all(
            Product(
                id=row["id"],
                vendor_id=row["vendor_id"],
                name=row["name"],
                price=int(row["price"]),
                sale_price=_int(row.get("sale_price")),
                service_charge=_int(row.get("service_charge")) or 0,
                status=row.get("status") or "approved",
                stock_qty=_int(row.get("stock_qty")) or 0,
                is_shippable=_bool(row.get("is_shippable"), default=True),
                weight_kg=(
                    float(row["weight_kg"]) if row.get("weight_kg") else None
                ),
                product_type=row.get("product_type") or "physical",
                variations=(
                    json.loads(row["variations"])
                    if row.get("variations")
                    else None
                ),
            )
            for row in rows
        )

      rows = _rows("promo_codes.csv")
      if rows is not None:
        logger.info("Importing promo codes from CSV...")
        await session.execute(delete(PromoCode))
        session.add_all(
            PromoCode(
                id=row["id"],
                code=row["code"],
                scope=row.get("scope") or "platform",
                vendor_id=row.get("vendor_id") or None,
                percent_off=float(row["percent_off"]),
                min_spend=_int(row.get("min_spend")) or 0,
                usage_limit=_int(row.get("usage_limit")),
                per_user_limit=_int(row.get("per_user_limit")),
                target_shippable=row.get("target_shippable") or "any",
                target_product_type=row.get("target_product_type") or "any",
            )
            for row in rows
        )

      rows = _rows("shipping_zones.csv")
      if rows is not None:
        logger.info("Importing shipping zones from CSV...")
        await session.execute(delete(ShippingZone))
        session.add_all(
            ShippingZone(
                id=row["id"],
                country_code=row.get("country_code") or "GH",
                name=row["name"],
                fee=int(row["fee"]),
                aramex_code=row.get("aramex_code") or None,
            )
            for row in rows
        )

      await session.commit()

    logger.info("Database populated from CSVs.")
  finally:
    await db.manager.close()


def main(argv) -> None:
  """Main entry point for the CSV import script."""
  del argv
  asyncio.run(import_csv_data())


if __name__ == "__main__":
  absl_app.run(main)
