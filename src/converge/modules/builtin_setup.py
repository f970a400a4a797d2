"""
Converge setup module (gather_facts)

Collect a minimal set of system facts from target hosts.
"""

from typing import Any, Dict

from converge.engine.results import ModuleResult
from converge.modules.base import ReadOnlyModule, register_module

_OS_FAMILIES = {
    "Debian": ("ubuntu", "debian", "linuxmint", "pop", "raspbian"),
    "RedHat": ("redhat", "rhel", "centos", "fedora", "rocky", "almalinux", "ol"),
    "Suse": ("suse", "opensuse", "opensuse-leap", "sles"),
    "Archlinux": ("arch", "manjaro", "endeavouros"),
    "Alpine": ("alpine",),
}

_COMMANDS = {
    "ansible_system": "uname -s",
    "ansible_kernel": "uname -r",
    "ansible_architecture": "uname -m",
    "ansible_hostname": "hostname -s 2>/dev/null || hostname",
    "ansible_fqdn": "hostname -f 2>/dev/null || hostname",
    "ansible_user_id": "id -un",
}

# Local date, time, epoch and zone, then the UTC timestamp
DATE_COMMAND = "date +'%Y-%m-%d %H:%M:%S %s %Z' && date -u +%Y-%m-%dT%H:%M:%SZ"


def parse_os_release(content: str) -> Dict[str, str]:
    """Parse /etc/os-release content into distribution facts."""
    facts: Dict[str, str] = {}
    for line in content.splitlines():
        key, sep, value = line.strip().partition("=")
        if not sep:
            continue
        value = value.strip('"\'')
        if key == "ID":
            facts["ansible_distribution"] = value.capitalize()
        elif key == "VERSION_ID":
            facts["ansible_distribution_version"] = value
        elif key == "PRETTY_NAME":
            facts["ansible_distribution_pretty"] = value
    return facts


def parse_date_time(output: str) -> Dict[str, str]:
    """Build ``ansible_date_time`` from the output of ``DATE_COMMAND``."""
    lines = output.strip().splitlines()
    if len(lines) != 2:
        return {}
    parts = lines[0].split()
    if len(parts) < 3:
        return {}
    date, time, epoch = parts[:3]
    try:
        year, month, day = date.split("-")
        hour, minute, second = time.split(":")
    except ValueError:
        return {}
    return {
        "date": date,
        "time": time,
        "year": year,
        "month": month,
        "day": day,
        "hour": hour,
        "minute": minute,
        "second": second,
        "epoch": epoch,
        "tz": parts[3] if len(parts) > 3 else "",
        "iso8601": lines[1].strip(),
    }


def os_family(distribution: str) -> str:
    dist_lower = distribution.lower()
    for family, members in _OS_FAMILIES.items():
        if dist_lower in members:
            return family
    return "Linux" if dist_lower else "Unknown"


@register_module
class SetupModule(ReadOnlyModule):
    """
    Gather minimal facts about target hosts.

    Facts are returned under ``ansible_facts`` and merged into the host's
    variables by the executor.
    """

    name = "setup"
    optional_args = {
        "gather_subset": ["all"],
    }

    async def run(self) -> ModuleResult:
        connection = self.require_connection()
        facts: Dict[str, Any] = {}

        for fact, command in _COMMANDS.items():
            result = await connection.run(command, shell=True)
            if result.success:
                facts[fact] = result.stdout.strip()

        result = await connection.run("cat /etc/os-release 2>/dev/null", shell=True)
        if result.success:
            facts.update(parse_os_release(result.stdout))
        facts["ansible_os_family"] = os_family(facts.get("ansible_distribution", ""))

        result = await connection.run(DATE_COMMAND, shell=True)
        if result.success:
            date_time = parse_date_time(result.stdout)
            if date_time:
                facts["ansible_date_time"] = date_time

        return ModuleResult(fields={"ansible_facts": facts})
