import pytest


@pytest.fixture
def source(tmp_path):
    """Write an assembly file and return its path as a string."""
    def write(text: str, name: str = 'prog.asm') -> str:
        path = tmp_path / name
        path.write_text(text)
        return str(path)
    return write
