# vectable/store/config.py
# SPDX-License-Identifier: Apache-2.0
"""
Connection configuration.

`ConnectConfig.options` is an opaque key/value mapping handed to the
storage engine verbatim; this layer never interprets it.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from typing import Mapping, Optional

DEFAULT_REGION = "us-east-1"

ENV_REGION = "VECTABLE_REGION"
ENV_ENGINE = "VECTABLE_ENGINE"
ENV_OPTION_PREFIX = "VECTABLE_OPTION_"


@dataclass(frozen=True)
class ConnectConfig:
    """
    Session parameters for `connect()`.

    Attributes:
        region: Region/locale of the store
        options: Transport-specific options passed through to the engine
        engine: Optional 'package.module:attr' engine factory overriding the
            URI scheme lookup
    """
    region: str = DEFAULT_REGION
    options: Mapping[str, str] = field(default_factory=dict)
    engine: Optional[str] = None

    def __post_init__(self) -> None:
        if not isinstance(self.region, str) or not self.region:
            raise ValueError("region must be a non-empty string")
        object.__setattr__(self, "options", {str(k): str(v) for k, v in self.options.items()})

    def with_options(self, **options: str) -> "ConnectConfig":
        merged = dict(self.options)
        merged.update(options)
        return replace(self, options=merged)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "ConnectConfig":
        """
        Build a config from VECTABLE_* environment variables.

        VECTABLE_OPTION_<KEY>=value becomes options["<key>"] = value.
        """
        env = os.environ if environ is None else environ
        options = {
            key[len(ENV_OPTION_PREFIX):].lower(): value
            for key, value in env.items()
            if key.startswith(ENV_OPTION_PREFIX) and len(key) > len(ENV_OPTION_PREFIX)
        }
        return cls(
            region=env.get(ENV_REGION) or DEFAULT_REGION,
            options=options,
            engine=env.get(ENV_ENGINE) or None,
        )


__all__ = [
    "DEFAULT_REGION",
    "ENV_REGION",
    "ENV_ENGINE",
    "ENV_OPTION_PREFIX",
    "ConnectConfig",
]
