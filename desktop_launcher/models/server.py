"""Server launch models."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict


class ServerArgs(BaseModel):
    """Listen address, port and any extra user launch flags.

    Extra flags are kept as additional string fields, so
    ``ServerArgs(listen="0.0.0.0", port="8188", cpu="")`` carries ``--cpu``.
    """

    model_config = ConfigDict(extra="allow", frozen=True, coerce_numbers_to_str=True)

    listen: str = "127.0.0.1"
    port: str = "8000"

    def as_flags(self) -> dict[str, str]:
        """All arguments as a flag map, listen and port first."""
        flags = {"listen": self.listen, "port": self.port}
        for key, value in (self.model_extra or {}).items():
            flags[key] = "" if value is None else str(value)
        return flags
