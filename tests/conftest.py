import os
from pathlib import Path

import pytest
from hypothesis import HealthCheck, settings

# Strict CI profile: heavy exploration for regression/CI
settings.register_profile(
    "ci",
    max_examples=200,
    deadline=None,  # normalization resolves paths on disk
    suppress_health_check=[HealthCheck.too_slow, HealthCheck.function_scoped_fixture],
    derandomize=False,
    print_blob=True,
)

# Light profile for mutation testing
settings.register_profile(
    "mutation",
    max_examples=25,
    deadline=None,
    suppress_health_check=[HealthCheck.too_slow, HealthCheck.function_scoped_fixture],
    derandomize=True,  # stable example sequence for reproducibility
)

settings.load_profile(os.getenv("HYPOTHESIS_PROFILE", "ci"))


HELLO_SOURCE = """//! Says hello.
//!
//! ```cargo
//! [dependencies]
//! anyhow = "1.0"
//! ```

fn main() {
    println!("hello");
}
"""


@pytest.fixture
def cache_root(tmp_path: Path) -> Path:
    """An isolated cache root; never the user's ~/.cargo."""
    return tmp_path / "cache"


@pytest.fixture
def write_source(tmp_path: Path):
    """Write a Rust source file below tmp_path/src and return its path."""

    def _write(name: str = "hello.rs", text: str = HELLO_SOURCE) -> Path:
        path = tmp_path / "src" / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(text, encoding="utf-8")
        return path

    return _write


@pytest.fixture
def workdir(tmp_path: Path, monkeypatch) -> Path:
    """A fresh current directory for artifact copies and write-manifest."""
    path = tmp_path / "work"
    path.mkdir()
    monkeypatch.chdir(path)
    return path
