"""Pipeline document loading tests."""

from __future__ import annotations

import textwrap

import pytest

from crateci.config import DeployConfig, PipelineConfig, discover_pipeline, load_pipeline, pipeline_from_dict
from crateci.errors import ConfigurationError
from crateci.matrix import expand

PIPELINE_YAML = textwrap.dedent(
    r"""
    crate: asymptote
    defaults:
      channel: stable
    matrix:
      - {TARGET: x86_64-pc-windows-gnu, FEATURES: -popcnt, NAME: windows-gnu-64bit}
      - {TARGET: x86_64-pc-windows-msvc, FEATURES: +popcnt, NAME: windows-msvc-64bit-popcount}
      - {TARGET: x86_64-pc-windows-msvc, CPU: broadwell, NAME: windows-msvc-64bit-broadwell}
      - {TARGET: x86_64-pc-windows-msvc, RUST_VERSION: nightly, NAME: windows-msvc-64bit-nightly}
    path_augment:
      x86_64-pc-windows-gnu: ['C:\msys64\mingw64\bin']
    cache:
      paths: ["{target_dir}"]
      version: v2
    branches:
      only: [master]
    deploy:
      repository: owner/asymptote
      description: release build
    workers: 3
    """
)


def _write(tmp_path, name, text):
    p = tmp_path / name
    p.write_text(text, encoding="utf-8")
    return p


class TestYaml:
    def test_full_document(self, tmp_path) -> None:
        cfg = load_pipeline(_write(tmp_path, "crateci.yml", PIPELINE_YAML))

        assert cfg.crate == "asymptote"
        assert cfg.release_channel == "stable"
        assert cfg.cache_paths == ["{target_dir}"]
        assert cfg.cache_version == "v2"
        assert cfg.branches_only == ["master"]
        assert cfg.deploy == DeployConfig(repository="owner/asymptote", description="release build")
        assert cfg.workers == 3
        assert cfg.path_augment == {"x86_64-pc-windows-gnu": [r"C:\msys64\mingw64\bin"]}

        jobs = expand(cfg.axis_set, cfg.defaults, release_channel=cfg.release_channel)
        assert [j.name for j in jobs] == [
            "windows-gnu-64bit",
            "windows-msvc-64bit-popcount",
            "windows-msvc-64bit-broadwell",
            "windows-msvc-64bit-nightly",
        ]
        assert [j.is_release_channel for j in jobs] == [True, True, True, False]

    def test_invalid_yaml(self, tmp_path) -> None:
        with pytest.raises(ConfigurationError, match="invalid YAML"):
            load_pipeline(_write(tmp_path, "crateci.yml", "crate: [unclosed"))

    def test_missing_file(self, tmp_path) -> None:
        with pytest.raises(ConfigurationError, match="not found"):
            load_pipeline(tmp_path / "nope.yml")

    def test_wrong_extension(self, tmp_path) -> None:
        with pytest.raises(ConfigurationError):
            load_pipeline(_write(tmp_path, "crateci.toml", "crate = 'x'"))


class TestFromDict:
    def _doc(self, **extra):
        doc = {"crate": "c", "matrix": [{"target": "t"}]}
        doc.update(extra)
        return doc

    def test_minimal_defaults(self) -> None:
        cfg = pipeline_from_dict(self._doc())
        assert cfg.release_channel == "stable"
        assert cfg.cache_paths == ["{cargo_home}/registry", "{target_dir}"]
        assert cfg.cargo_home_root == ".crateci/cargo-home"
        assert cfg.deploy.repository == ""
        assert "master" in cfg.branches_only

    def test_release_channel_follows_default_channel(self) -> None:
        assert pipeline_from_dict(self._doc(defaults={"channel": "beta"})).release_channel == "beta"

    def test_unknown_key(self) -> None:
        with pytest.raises(ConfigurationError, match="unknown top-level"):
            pipeline_from_dict(self._doc(enviroment={}))

    def test_crate_required(self) -> None:
        with pytest.raises(ConfigurationError, match="crate"):
            pipeline_from_dict({"matrix": [{"target": "t"}]})

    def test_bad_repository(self) -> None:
        with pytest.raises(ConfigurationError, match="owner/name"):
            pipeline_from_dict(self._doc(deploy={"repository": "just-a-name"}))

    @pytest.mark.parametrize("workers", [0, "many"])
    def test_bad_workers(self, workers) -> None:
        with pytest.raises(ConfigurationError):
            pipeline_from_dict(self._doc(workers=workers))

    def test_cache_as_list(self) -> None:
        assert pipeline_from_dict(self._doc(cache=["a", "b"])).cache_paths == ["a", "b"]

    def test_cargo_home_empty_inherits(self) -> None:
        assert pipeline_from_dict(self._doc(cargo_home=None)).cargo_home_root == ""
        assert pipeline_from_dict(self._doc(cargo_home="ch")).cargo_home_root == "ch"

    def test_bad_cargo_home(self) -> None:
        with pytest.raises(ConfigurationError, match="cargo_home"):
            pipeline_from_dict(self._doc(cargo_home=["a"]))

    def test_empty_branches_only_allows_all(self) -> None:
        assert pipeline_from_dict(self._doc(branches={"only": []})).branches_only == []


class TestPythonPipeline:
    def test_pipeline_function(self, tmp_path) -> None:
        path = _write(
            tmp_path,
            "crateci_pipeline.py",
            textwrap.dedent(
                """
                from crateci.model import AxisSet

                def pipeline():
                    return {"crate": "c", "matrix": [{"target": t} for t in ("a", "b")]}
                """
            ),
        )
        cfg = load_pipeline(path)
        assert len(cfg.axis_set) == 2

    def test_pipeline_constant(self, tmp_path) -> None:
        path = _write(
            tmp_path,
            "p.py",
            textwrap.dedent(
                """
                from crateci.config import PipelineConfig
                from crateci.model import AxisSet

                PIPELINE = PipelineConfig(crate="c", axis_set=AxisSet.product(target=["a"]))
                """
            ),
        )
        assert isinstance(load_pipeline(path), PipelineConfig)

    def test_neither_defined(self, tmp_path) -> None:
        with pytest.raises(ConfigurationError, match="pipeline"):
            load_pipeline(_write(tmp_path, "p.py", "X = 1\n"))


class TestEnvAndDiscovery:
    def test_apply_env(self) -> None:
        cfg = pipeline_from_dict({"crate": "c", "matrix": [{"target": "t"}]})
        cfg.apply_env({"CRATECI_WORKERS": "4", "CRATECI_STEP_TIMEOUT": "90", "CRATECI_CACHE_DIR": "/tmp/c"})
        assert cfg.workers == 4
        assert cfg.step_timeout == 90.0
        assert cfg.cache_dir == "/tmp/c"

    def test_cache_root_under_work_dir(self, tmp_path) -> None:
        cfg = pipeline_from_dict({"crate": "c", "matrix": [{"target": "t"}]})
        cfg.apply_env({"CRATECI_WORK_DIR": str(tmp_path)})
        assert cfg.cache_root() == (tmp_path / ".crateci" / "cache").resolve()
        assert cfg.cache_root(tmp_path / "elsewhere") == (tmp_path / "elsewhere").resolve()

    def test_apply_env_bad_value(self) -> None:
        cfg = pipeline_from_dict({"crate": "c", "matrix": [{"target": "t"}]})
        with pytest.raises(ConfigurationError, match="CRATECI_WORKERS"):
            cfg.apply_env({"CRATECI_WORKERS": "lots"})

    def test_explicit_wins(self) -> None:
        assert str(discover_pipeline("x.yml", {"CRATECI_PIPELINE": "y.yml"})) == "x.yml"
        assert str(discover_pipeline(None, {"CRATECI_PIPELINE": "y.yml"})) == "y.yml"

    def test_single_default_file(self, tmp_path, monkeypatch) -> None:
        monkeypatch.chdir(tmp_path)
        _write(tmp_path, "crateci.yml", "crate: c\n")
        assert discover_pipeline(None, {}).name == "crateci.yml"

    def test_none_found(self, tmp_path, monkeypatch) -> None:
        monkeypatch.chdir(tmp_path)
        with pytest.raises(ConfigurationError, match="No pipeline"):
            discover_pipeline(None, {})

    def test_ambiguous(self, tmp_path, monkeypatch) -> None:
        monkeypatch.chdir(tmp_path)
        _write(tmp_path, "crateci.yml", "crate: c\n")
        _write(tmp_path, "crateci.yaml", "crate: c\n")
        with pytest.raises(ConfigurationError, match="Multiple"):
            discover_pipeline(None, {})
