import allure
from click.testing import CliRunner

from ralph_loop import __version__
from ralph_loop.main import ralph_loop

pytestmark = [
    allure.epic("Loop Runtime"),
    allure.feature("CLI Ops"),
]


def test_version():
    assert __version__


def test_version_option():
    runner = CliRunner()
    result = runner.invoke(ralph_loop, ["--version"])
    assert result.exit_code == 0
    assert __version__ in result.output
