# Copyright 2025 ApeCloud, Inc.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

import logging
import os
from typing import Mapping, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from webid.exceptions import ConfigurationException

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class Config(BaseModel):
    """Operator configuration, loaded once at start-up and treated as read-only afterwards"""

    model_config = ConfigDict(frozen=True)

    ingress_domain: str = Field(..., min_length=1, description="Host served by every Site ingress")
    ingress_class: str = Field("nginx", min_length=1, description="Ingress class name")
    log_level: str = Field("INFO", description="Root log level")
    namespace: Optional[str] = Field(None, description="Namespace to watch, all namespaces when unset")
    retry_delay: float = Field(10.0, gt=0, description="Seconds before a failed reconcile is re-delivered")

    @field_validator("log_level")
    @classmethod
    def _check_log_level(cls, value: str) -> str:
        level = value.upper()
        if not isinstance(logging.getLevelName(level), int):
            raise ValueError(f"unknown log level: {value}")
        return level

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None, dotenv_path: Optional[str] = None) -> "Config":
        """
        Build the configuration from environment variables

        Args:
            environ: Mapping to read from, defaults to os.environ (after loading a .env file)
            dotenv_path: Optional explicit .env file location

        Raises:
            ConfigurationException: INGRESS_DOMAIN is missing or a value is invalid
        """
        if environ is None:
            load_dotenv(dotenv_path)
            environ = os.environ

        values = {
            "ingress_domain": environ.get("INGRESS_DOMAIN"),
            "ingress_class": environ.get("INGRESS_CLASS") or "nginx",
            "log_level": environ.get("WEBID_LOG_LEVEL") or "INFO",
            "namespace": environ.get("WEBID_NAMESPACE") or None,
            "retry_delay": environ.get("WEBID_RETRY_DELAY") or 10.0,
        }
        if not values["ingress_domain"]:
            raise ConfigurationException("INGRESS_DOMAIN environment variable is required")

        try:
            return cls(**values)
        except ValidationError as e:
            raise ConfigurationException(f"Invalid configuration: {e}") from e


def setup_logging(config: Config):
    logging.basicConfig(level=config.log_level, format=LOG_FORMAT)
    # the kubernetes client logs every request at DEBUG
    logging.getLogger("kubernetes").setLevel(logging.WARNING)
