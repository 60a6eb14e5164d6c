import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

DEFAULT_CONF = os.path.expanduser("~/.config/nodewatch/node.conf")

NETWORK_FLAGS = {
    "main": None,
    "mainnet": None,
    "sepolia": "--sepolia",
    "holesky": "--holesky",
    "dev": "--dev",
}


@dataclass
class NodeConfig:
    """Settings handed to geth. Values are passed through as given."""

    network: str = "main"
    sync_mode: str = "snap"
    data_dir: Optional[str] = None
    ipc_path: Optional[str] = None
    binary: str = "geth"
    extra_args: List[str] = field(default_factory=list)

    @classmethod
    def load(cls, conf_path: Optional[str] = None) -> "NodeConfig":
        """Read the conf file, then let NODEWATCH_* environment variables override it."""
        config = cls()
        config._load_conf(conf_path or os.environ.get("NODEWATCH_CONF", DEFAULT_CONF))
        env_overrides = {
            "NODEWATCH_NETWORK": "network",
            "NODEWATCH_SYNCMODE": "sync_mode",
            "NODEWATCH_DATADIR": "data_dir",
            "NODEWATCH_IPCPATH": "ipc_path",
            "NODEWATCH_GETH": "binary",
        }
        for env_name, attr in env_overrides.items():
            value = os.environ.get(env_name)
            if value:
                setattr(config, attr, value)
        return config

    def _load_conf(self, conf_path: str) -> None:
        path = Path(conf_path)
        if not path.exists():
            return
        conf_dir = str(path.parent)
        for line in path.read_text().splitlines():
            line = line.strip()
            if not line or line.startswith("#") or "=" not in line:
                continue
            key, value = line.split("=", 1)
            key = key.strip().lower()
            value = value.strip()
            if key == "network":
                self.network = value
            elif key == "syncmode":
                self.sync_mode = value
            elif key == "datadir":
                self.data_dir = value
                if not os.path.isabs(value):
                    self.data_dir = os.path.normpath(os.path.join(conf_dir, value))
            elif key == "ipcpath":
                self.ipc_path = value
            elif key == "geth":
                self.binary = value
            elif key == "arg":
                self.extra_args.append(value)

    def resolve_ipc_path(self) -> str:
        """Where geth will put its IPC socket for this config."""
        if self.ipc_path and os.path.isabs(self.ipc_path):
            return self.ipc_path
        data_dir = self.data_dir or os.path.expanduser("~/.ethereum")
        if not self.data_dir and self.network not in ("main", "mainnet", "dev"):
            data_dir = os.path.join(data_dir, self.network)
        return os.path.join(data_dir, self.ipc_path or "geth.ipc")

    def to_args(self) -> List[str]:
        args = [self.binary, "--syncmode", self.sync_mode]
        flag = NETWORK_FLAGS.get(self.network)
        if flag:
            args.append(flag)
        if self.data_dir:
            args += ["--datadir", self.data_dir]
        if self.ipc_path:
            args += ["--ipcpath", self.ipc_path]
        return args + list(self.extra_args)
