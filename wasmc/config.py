"""Project configuration: libs, modules and executor settings.

Configuration:
    Create a wasmc.json (or wasmc.yaml) file in your project root:

    {
        "builddir": "build",
        "libs": {
            "util": {"sources": ["src/util/*.c"]}
        },
        "modules": [
            {
                "name": "foo",
                "out": "dist/foo.js",
                "jsentry": "src/foo.js",
                "deps": ["util"],
                "sources": ["src/foo/*.c"],
                "embed": false,
                "target": "node",
                "constants": {"VERSION": "1.0"}
            }
        ],
        "executor": {
            "image": "rsms/emsdk:latest",
            "local": false,
            "respawn_delay": 1.0
        }
    }

Environment Variables:
    WASMC_DOCKER_IMAGE      Docker image the build executor runs in
    WASMC_LOCAL_EXECUTOR    Set to 'true' to run the executor without docker
    WASMC_BUILDDIR          Build directory, relative to the project root
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, TypedDict

import yaml

from wasmc.errors import ConfigError

# Default configuration file names
CONFIG_FILE_NAMES = ["wasmc.json", "wasmc.yaml", "wasmc.yml", ".wasmcrc.json"]

DEFAULT_DOCKER_IMAGE = "rsms/emsdk:latest"

DEFAULT_BUILDDIR = "build"

TARGETS = ("node", "node-legacy", "web", "worker")


class LibConfigDict(TypedDict, total=False):
    """Type definition for a lib entry."""

    sources: list[str]


class ModuleConfigDict(TypedDict, total=False):
    """Type definition for a module entry."""

    name: str
    out: str
    jsentry: str
    jslib: str
    deps: list[str]
    sources: list[str]
    embed: bool
    target: str | None
    ecma: int
    syncinit: bool
    constants: dict[str, Any]


class ExecutorConfigDict(TypedDict, total=False):
    """Type definition for executor settings."""

    image: str
    command: list[str]
    local: bool
    respawn_delay: float


class ConfigDict(TypedDict, total=False):
    """Type definition for configuration dictionary."""

    builddir: str
    libs: dict[str, LibConfigDict]
    modules: list[ModuleConfigDict]
    executor: ExecutorConfigDict


@dataclass(frozen=True)
class Lib:
    """A named collection of native source files."""

    name: str
    patterns: tuple[str, ...] = ()
    files: tuple[Path, ...] = ()


@dataclass(frozen=True)
class Module:
    """A build unit producing a wasm binary and a JavaScript wrapper."""

    name: str
    out: Path
    build_wasm: Path
    build_glue: Path
    wasm_out: Path | None = None
    jsentry: Path | None = None
    jslib: Path | None = None
    deps: tuple[str, ...] = ()
    embed: bool = False
    target: str | None = None
    ecma: int = 0
    syncinit: bool = False
    constants: dict[str, Any] = field(default_factory=dict, hash=False)

    @property
    def native_artifact(self) -> Path:
        """The product whose mtime tells whether the native build is stale."""
        return self.out if self.embed or self.wasm_out is None else self.wasm_out

    @property
    def target_name(self) -> str:
        """Build target for this module, relative to the build directory."""
        return self.build_wasm.name


@dataclass(frozen=True)
class ExecutorConfig:
    """How to start the build executor."""

    image: str = DEFAULT_DOCKER_IMAGE
    command: tuple[str, ...] = ()
    local: bool = False
    respawn_delay: float = 1.0


@dataclass(frozen=True)
class ProjectConfig:
    """Resolved project configuration."""

    file: Path
    projectdir: Path
    builddir: Path
    libs: dict[str, Lib] = field(default_factory=dict, hash=False)
    modules: tuple[Module, ...] = ()
    executor: ExecutorConfig = field(default_factory=ExecutorConfig)
    debug: bool = False

    def module(self, name: str) -> Module:
        for m in self.modules:
            if m.name == name:
                return m
        raise KeyError(name)

    def relpath(self, path: Path) -> str:
        try:
            return str(path.relative_to(self.projectdir))
        except ValueError:
            return str(path)


def expand_patterns(root_dir: Path, patterns: list[str] | tuple[str, ...]) -> list[Path]:
    """Expand glob patterns to actual file paths."""
    files: list[Path] = []
    for pattern in patterns:
        if os.path.isabs(pattern):
            p = Path(pattern)
            matched = list(Path(p.anchor).glob(str(p.relative_to(p.anchor))))
        else:
            matched = list(root_dir.glob(pattern))
        for path in sorted(matched):
            if path.is_file() and path not in files:
                files.append(path)
    return files


def find_config_file(root_dir: Path, config_path: Path | None = None) -> Path:
    """Locate the configuration file."""
    if config_path:
        full_path = root_dir / config_path
        if full_path.exists():
            return full_path
        raise FileNotFoundError(f"Config file not found: {config_path}")

    for filename in CONFIG_FILE_NAMES:
        full_path = root_dir / filename
        if full_path.exists():
            return full_path

    raise FileNotFoundError(f"No config file ({', '.join(CONFIG_FILE_NAMES)}) in {root_dir}")


def load_config_file(path: Path) -> ConfigDict:
    """Load configuration data from a JSON or YAML file."""
    try:
        with open(path, encoding="utf-8") as f:
            if path.suffix in (".yaml", ".yml"):
                data = yaml.safe_load(f) or {}
            else:
                data = json.load(f)
    except json.JSONDecodeError as e:
        raise ConfigError(f"Invalid JSON in config file {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in config file {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must contain an object")
    return data  # type: ignore[return-value]


def load_env_config() -> ConfigDict:
    """Load configuration from environment variables."""
    config: ConfigDict = {}
    executor: ExecutorConfigDict = {}

    if os.environ.get("WASMC_DOCKER_IMAGE"):
        executor["image"] = os.environ["WASMC_DOCKER_IMAGE"]
    if os.environ.get("WASMC_LOCAL_EXECUTOR") == "true":
        executor["local"] = True
    if os.environ.get("WASMC_BUILDDIR"):
        config["builddir"] = os.environ["WASMC_BUILDDIR"]
    if executor:
        config["executor"] = executor

    return config


def merge_configs(base: ConfigDict, override: ConfigDict) -> ConfigDict:
    """Shallow merge with one level of nesting for executor settings."""
    merged: ConfigDict = {**base, **override}  # type: ignore[typeddict-item]
    if "executor" in base and "executor" in override:
        merged["executor"] = {**base["executor"], **override["executor"]}
    return merged


def _as_tuple(value: str | list[str] | None) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        return (value,)
    return tuple(value)


def _strip_ext(path: Path) -> Path:
    return path.with_suffix("") if path.suffix else path


def _make_lib(name: str, data: LibConfigDict, projectdir: Path) -> Lib:
    patterns = _as_tuple(data.get("sources"))
    if not patterns:
        raise ConfigError(f"lib {name!r} has no sources")
    return Lib(
        name=name,
        patterns=patterns,
        files=tuple(expand_patterns(projectdir, patterns)),
    )


def _make_module(
    data: ModuleConfigDict, index: int, projectdir: Path, builddir: Path, libs: dict[str, Lib]
) -> Module:
    out_str = data.get("out")
    if not out_str:
        raise ConfigError(f"module #{index} is missing 'out'")
    out = (projectdir / out_str).resolve()
    name = data.get("name") or _strip_ext(out).name

    target = data.get("target")
    if target is not None and target not in TARGETS:
        raise ConfigError(f"module {name!r}: invalid target {target!r} (expected one of {', '.join(TARGETS)})")

    deps = list(_as_tuple(data.get("deps")))
    if data.get("sources"):
        lib_name = f"{name}_lib"
        libs[lib_name] = _make_lib(lib_name, {"sources": list(_as_tuple(data["sources"]))}, projectdir)
        deps.append(lib_name)
    for dep in deps:
        if dep not in libs:
            raise ConfigError(f"module {name!r} depends on unknown lib {dep!r}")

    embed = bool(data.get("embed", False))
    jsentry = data.get("jsentry")
    jslib = data.get("jslib")
    return Module(
        name=name,
        out=out,
        build_wasm=builddir / f"{name}.wasm",
        build_glue=builddir / f"{name}.js",
        wasm_out=None if embed else _strip_ext(out).with_suffix(".wasm"),
        jsentry=(projectdir / jsentry).resolve() if jsentry else None,
        jslib=(projectdir / jslib).resolve() if jslib else None,
        deps=tuple(deps),
        embed=embed,
        target=target,
        ecma=int(data.get("ecma", 0)),
        syncinit=bool(data.get("syncinit", False)) or embed,
        constants=dict(data.get("constants", {})),
    )


def build_config(data: ConfigDict, file: Path, projectdir: Path | None = None, debug: bool = False) -> ProjectConfig:
    """Resolve configuration data into a ProjectConfig."""
    projectdir = (projectdir or file.parent).resolve()
    builddir = (projectdir / data.get("builddir", DEFAULT_BUILDDIR)).resolve()

    libs: dict[str, Lib] = {}
    for name, lib_data in (data.get("libs") or {}).items():
        libs[name] = _make_lib(name, lib_data, projectdir)

    modules: list[Module] = []
    for i, module_data in enumerate(data.get("modules") or []):
        module = _make_module(module_data, i, projectdir, builddir, libs)
        if any(m.name == module.name for m in modules):
            raise ConfigError(f"duplicate module name {module.name!r}")
        modules.append(module)

    executor_data = data.get("executor") or {}
    executor = ExecutorConfig(
        image=executor_data.get("image", DEFAULT_DOCKER_IMAGE),
        command=tuple(executor_data.get("command", ())),
        local=bool(executor_data.get("local", False)),
        respawn_delay=float(executor_data.get("respawn_delay", 1.0)),
    )

    return ProjectConfig(
        file=file.resolve(),
        projectdir=projectdir,
        builddir=builddir,
        libs=libs,
        modules=tuple(modules),
        executor=executor,
        debug=debug,
    )


def load_config(
    root_dir: Path,
    config_path: Path | None = None,
    overrides: ConfigDict | None = None,
    debug: bool = False,
) -> ProjectConfig:
    """Find, read and resolve the project configuration.

    File values are overlaid by environment variables, then by overrides.
    """
    path = find_config_file(root_dir, config_path)
    data = merge_configs(load_config_file(path), load_env_config())
    if overrides:
        data = merge_configs(data, overrides)
    projectdir = root_dir if config_path is None else path.parent
    return build_config(data, path, projectdir, debug=debug)
