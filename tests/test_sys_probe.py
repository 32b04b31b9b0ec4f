from conftest import FakeRunner
from nodekeeper_agent.errors import CommandError
from nodekeeper_agent.handlers import CommandOutput
from nodekeeper_agent.sys_probe import SysProbe

OS_RELEASE = """\
NAME="Alpine Linux"
ID=Alpine
VERSION_ID=3.18.4
PRETTY_NAME="Alpine Linux v3.18"
# comment
"""


def test_info_combines_os_release_and_uname(tmp_path) -> None:
    os_release = tmp_path / "os-release"
    os_release.write_text(OS_RELEASE)
    runner = FakeRunner({("uname", "-snrm"): CommandOutput("Linux web-1 6.1.55-0-lts x86_64\n", "", 0)})

    info = SysProbe(runner, str(os_release)).info()

    assert info.os.id == "alpine"
    assert info.os.name == "Alpine Linux"
    assert info.os.release == "6.1.55-0-lts"
    assert info.kernel == "Linux"
    assert info.name == "web-1"
    assert info.machine == "x86_64"


def test_info_survives_missing_uname(tmp_path) -> None:
    os_release = tmp_path / "os-release"
    os_release.write_text(OS_RELEASE)

    class BrokenRunner(FakeRunner):
        def run(self, command, *args):
            raise CommandError(command, 127, "not found")

    info = SysProbe(BrokenRunner(), str(os_release)).info()
    assert info.os.id == "alpine"
    assert info.name == ""


def test_missing_os_release_gives_empty_id(tmp_path) -> None:
    info = SysProbe(FakeRunner(), str(tmp_path / "absent")).info()
    assert info.os.id == ""


def test_parse_os_release_unquotes() -> None:
    values = SysProbe.parse_os_release(OS_RELEASE)
    assert values["PRETTY_NAME"] == "Alpine Linux v3.18"
    assert values["VERSION_ID"] == "3.18.4"
    assert "# comment" not in values
