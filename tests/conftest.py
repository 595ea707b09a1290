import pytest

import runproxy.low.tracing as tracing


@pytest.fixture(autouse=True)
def tracing_labels():
    # coordinators label the process-wide trace with their session
    saved = dict(tracing.d)
    yield tracing.d
    tracing.d.clear()
    tracing.d.update(saved)
