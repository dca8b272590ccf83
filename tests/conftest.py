import itertools
from pathlib import Path

import pytest

from filecrypt import AES_256_CBC, CipherPipeline, KeyDeriver

FAST_ITERATIONS = 1_000


@pytest.fixture
def deriver() -> KeyDeriver:
    return KeyDeriver(iterations=FAST_ITERATIONS)


@pytest.fixture
def pipeline(deriver: KeyDeriver) -> CipherPipeline:
    return CipherPipeline(config=AES_256_CBC, deriver=deriver)


@pytest.fixture(scope="session")
def work_dir_sequence():
    # one counter per test session, starting at 1
    return itertools.count(1)


@pytest.fixture
def work_dir(tmp_path_factory, work_dir_sequence) -> Path:
    d = tmp_path_factory.getbasetemp() / "work" / str(next(work_dir_sequence))
    d.mkdir(parents=True)
    return d
