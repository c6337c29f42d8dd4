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

"""Utility script to dump payment reconciliation trails from the database.

For every order this prints its status and the last webhook debug entry
recorded by payment reconciliation. It can optionally list the order's
payment ledger rows too.

Usage:
  uv run dump_webhooks.py --database_path=... [--order_code=...]
  [--show_payments]
"""

import asyncio
import json
import sys
from absl import app as absl_app
from absl import flags
import db
from db import Order
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.orm import sessionmaker

FLAGS = flags.FLAGS
flags.DEFINE_string("database_path", None, "Path to SQLite DB")
flags.DEFINE_string("order_code", None, "Only show this order")
flags.DEFINE_bool("show_payments", False, "Show payment ledger rows")


async def dump_webhooks():
  """Queries the database and prints reconciliation trails."""
  if not FLAGS.database_path:
    print("Error: --database_path is required.")
    sys.exit(1)

  db_url = f"sqlite+aiosqlite:///{FLAGS.database_path}"
  engine = create_async_engine(db_url, echo=False)
  session_factory = sessionmaker(
      engine, expire_on_commit=False, class_=AsyncSession
  )

  async with session_factory() as session:
    print("=== PAYMENT RECONCILIATION ===")
    query = select(Order).order_by(Order.created_at)
    if FLAGS.order_code:
      query = query.where(Order.order_code == FLAGS.order_code)
    orders = (await session.execute(query)).scalars().all()

    if not orders:
      print("No orders found.")
      await engine.dispose()
      return

    for order in orders:
      print(
          f"[{order.created_at}] {order.order_code} status={order.status}"
          f" total={order.total_amount} {order.currency}"
      )
      debug = (order.payment_response or {}).get("webhook_debug")
      if debug:
        print(f"  Webhook: {json.dumps(debug, indent=2, default=str)}")
      else:
        print("  Webhook: none received")

      if FLAGS.show_payments:
        for payment in await db.get_order_payments(session, order.id):
          print(
              f"  Payment: {payment.provider} {payment.status}"
              f" {payment.amount} ref={payment.provider_reference}"
          )
      print("-" * 40)

  await engine.dispose()


def main(argv):
  """Main entry point for the webhook dump script."""
  del argv
  asyncio.run(dump_webhooks())


if __name__ == "__main__":
  absl_app.run(main)
