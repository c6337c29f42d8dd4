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

"""Shared configuration and startup logic for the checkout server.

Every flag defaults from the environment variable with the same upper-case
name, so deployments can configure the server either way.
"""

import contextlib
import logging
import os
from typing import Any

from absl import flags
import db
from fastapi import FastAPI

FLAGS = flags.FLAGS

SERVER_VERSION = "1.4.0"

logger = logging.getLogger(__name__)


def _env_int(name: str, default: int | None) -> int | None:
  value = os.environ.get(name)
  if value is None or not value.strip():
    return default
  return int(value)


# Define flags only if they haven't been defined yet (to avoid duplicates
# during tests or re-imports)
try:
  flags.DEFINE_string(
      "database_path", os.environ.get("DATABASE_PATH"), "Path to SQLite DB"
  )
  flags.DEFINE_integer(
      "port", _env_int("PORT", None), "Port to run the server on"
  )
  flags.DEFINE_string(
      "app_origin",
      os.environ.get("APP_ORIGIN", ""),
      "Public origin used for payment redirect and callback URLs",
  )
  flags.DEFINE_string(
      "expresspay_env",
      os.environ.get("EXPRESSPAY_ENV", "sandbox"),
      "ExpressPay environment: sandbox, or live/production/prod",
  )
  flags.DEFINE_string(
      "expresspay_merchant_id",
      os.environ.get("EXPRESSPAY_MERCHANT_ID"),
      "ExpressPay merchant id",
  )
  flags.DEFINE_string(
      "expresspay_api_key",
      os.environ.get("EXPRESSPAY_API_KEY"),
      "ExpressPay API key",
  )
  flags.DEFINE_string(
      "aramex_username", os.environ.get("ARAMEX_USERNAME"), "Aramex user"
  )
  flags.DEFINE_string(
      "aramex_password", os.environ.get("ARAMEX_PASSWORD"), "Aramex password"
  )
  flags.DEFINE_string(
      "aramex_account_number",
      os.environ.get("ARAMEX_ACCOUNT_NUMBER"),
      "Aramex account number",
  )
  flags.DEFINE_string(
      "aramex_account_pin",
      os.environ.get("ARAMEX_ACCOUNT_PIN"),
      "Aramex account PIN",
  )
  flags.DEFINE_string(
      "aramex_account_entity",
      os.environ.get("ARAMEX_ACCOUNT_ENTITY"),
      "Aramex account entity",
  )
  flags.DEFINE_string(
      "aramex_account_country_code",
      os.environ.get("ARAMEX_ACCOUNT_COUNTRY_CODE"),
      "Aramex account country code",
  )
  flags.DEFINE_string(
      "aramex_version",
      os.environ.get("ARAMEX_VERSION", "v1.0"),
      "Aramex API version sent in ClientInfo",
  )
  flags.DEFINE_string(
      "aramex_rate_url",
      os.environ.get("ARAMEX_RATE_URL"),
      "Override for the Aramex rate calculator endpoint",
  )
  flags.DEFINE_string(
      "aramex_location_url",
      os.environ.get("ARAMEX_LOCATION_URL"),
      "Override for the Aramex location endpoint",
  )
  flags.DEFINE_string(
      "aramex_shipping_url",
      os.environ.get("ARAMEX_SHIPPING_URL"),
      "Override for the Aramex shipping endpoint",
  )
  flags.DEFINE_string(
      "aramex_tracking_url",
      os.environ.get("ARAMEX_TRACKING_URL"),
      "Override for the Aramex tracking endpoint",
  )
  flags.DEFINE_string(
      "cron_secret",
      os.environ.get("CRON_SECRET"),
      "Bearer secret for scheduled maintenance endpoints",
  )
  flags.DEFINE_string(
      "inbound_email_secret",
      os.environ.get("INBOUND_EMAIL_SECRET"),
      "Shared secret for the inbound support email webhook",
  )
  flags.DEFINE_integer(
      "pending_order_timeout_hours",
      _env_int("PENDING_ORDER_TIMEOUT_HOURS", 24),
      "Age after which unpaid pending orders are cancelled",
  )
except flags.DuplicateFlagError:
  pass


def get_flag(name: str) -> Any:
  """Returns a flag value, falling back to its default before parsing."""
  if FLAGS.is_parsed():
    return getattr(FLAGS, name)
  return FLAGS[name].value


@contextlib.asynccontextmanager
async def lifespan(app: FastAPI):
  """Shared lifespan manager for initializing the database."""
  del app  # Unused.
  # In tests the session dependencies are overridden instead
  database_path = get_flag("database_path")
  if database_path:
    logger.info("Opening database at %s", database_path)
    await db.manager.init_db(database_path)
  yield
  await db.manager.close()
