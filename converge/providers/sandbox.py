"""
File-backed provider: every "remote" object is a JSON document under
<root>/<provider>/<resource type>/<id>.json. Useful for trying declarations
end to end without touching a real control plane.
"""
import contextlib
import json
import os
import tempfile
from typing import Any, Dict, Optional

from converge.errors import ProviderTransientError
from converge.providers.memory import KeyValueProvider


class SandboxProvider(KeyValueProvider):
    def __init__(self, name: str = "sandbox", root: str = ".converge/sandbox", computed=None, data_sources=None):
        super().__init__(name, computed, data_sources)
        self.root = root

    def _path(self, resource_type: str, resource_id: str) -> str:
        safe_type = resource_type.replace("::", "_")
        return os.path.join(self.root, self.name, safe_type, f"{resource_id}.json")

    def _load(self, resource_type: str, resource_id: str) -> Optional[Dict[str, Any]]:
        path = self._path(resource_type, resource_id)
        try:
            with open(path, encoding="utf-8") as fh:
                return json.load(fh)
        except FileNotFoundError:
            return None
        except ValueError as exc:
            # a half-written object; the next attempt sees the finished file
            raise ProviderTransientError(f"{path}: {exc}") from exc

    def _save(self, resource_type: str, resource_id: str, attributes: Dict[str, Any]) -> None:
        path = self._path(resource_type, resource_id)
        os.makedirs(os.path.dirname(path), exist_ok=True)
        fd, tmp = tempfile.mkstemp(suffix=".json", dir=os.path.dirname(path))
        try:
            with os.fdopen(fd, "w", encoding="utf-8", newline="\n") as fh:
                json.dump(attributes, fh, indent=2, sort_keys=True)
            os.replace(tmp, path)
        except OSError as exc:
            with contextlib.suppress(FileNotFoundError):
                os.remove(tmp)
            raise ProviderTransientError(f"cannot write {path}: {exc}") from exc

    def _remove(self, resource_type: str, resource_id: str) -> None:
        with contextlib.suppress(FileNotFoundError):
            os.remove(self._path(resource_type, resource_id))
