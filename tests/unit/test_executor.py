"""
Tests for the executor: ordering, failure isolation, handlers and check mode.
"""

import asyncio
import logging

import pytest

from converge.engine.config import RunConfig
from converge.engine.errors import ExitCode
from converge.engine.results import NO_LOG_MESSAGE, SECRET_MASK, TaskStatus
from converge.engine.vault import VaultLib, VaultSecret, VaultText
from converge.modules.builtin_setup import DATE_COMMAND

ONE_HOST = {'all': {'children': {'web': {'hosts': {'h1': {}}}}}}
TWO_WEB = {'all': {'children': {'web': {'hosts': {'h1': {}, 'h2': {}}}}}}


def statuses(report, host):
    return [e.status for e in report.entries_for(host)]


def indent(text, width):
    return "\n".join(" " * width + line for line in text.splitlines())


class TestOrdering:
    """Units run in declaration order on every host."""

    @pytest.mark.asyncio
    async def test_tasks_run_in_order_per_host(self, converge, remote):
        """Each host sees its tasks in playbook order."""
        report = await converge("""
- hosts: web
  tasks:
    - name: first
      debug: msg=one
    - name: second
      command: /bin/true
    - name: third
      debug:
        msg: three
""", remote=remote)

        for host in ('web1', 'web2'):
            assert [e.task for e in report.entries_for(host)] == ['first', 'second', 'third']
            assert remote.modules_on(host) == ['debug', 'command', 'debug']

    @pytest.mark.asyncio
    async def test_connection_opened_once_per_play(self, converge, remote):
        """A host's connection is reused by every unit and closed after the play."""
        await converge("""
- hosts: web
  tasks:
    - debug: msg=a
    - debug: msg=b
    - debug: msg=c
""", remote=remote)

        assert remote.opened.count('web1') == 1
        assert remote.closed.count('web1') == 1

    @pytest.mark.asyncio
    async def test_forks_bound_concurrency(self, converge, remote, world):
        """No more than ``forks`` hosts are in flight at once."""
        world.delays['sleep 0.02'] = 0.02
        inventory = {'all': {'hosts': {f'node{i}': {} for i in range(5)}}}

        in_flight = 0
        peak = 0
        original = remote.invoke

        async def tracking(*args, **kwargs):
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            try:
                return await original(*args, **kwargs)
            finally:
                in_flight -= 1

        remote.invoke = tracking
        await converge("""
- hosts: all
  tasks:
    - command: sleep 0.02
""", inventory=inventory, remote=remote, config=RunConfig(forks=2))

        assert peak == 2


class TestScenarios:
    """End-to-end behaviour over an in-memory host."""

    PLAYBOOK = """
- hosts: web
  tasks:
    - name: ensure marker
      copy:
        content: "state=present"
        dest: /etc/marker
      register: marker
    - name: report change
      debug:
        msg: marker written
      when: marker.changed
"""

    @pytest.mark.asyncio
    async def test_second_run_is_idempotent(self, converge, make_remote):
        """First run changes and reports; second run changes nothing and skips."""
        first = await converge(self.PLAYBOOK, inventory=ONE_HOST, remote=make_remote())
        stats = first.stats['h1']
        assert (stats.ok, stats.changed, stats.skipped) == (1, 1, 0)
        assert statuses(first, 'h1') == [TaskStatus.CHANGED, TaskStatus.OK]

        second = await converge(self.PLAYBOOK, inventory=ONE_HOST, remote=make_remote())
        stats = second.stats['h1']
        assert (stats.ok, stats.changed, stats.skipped) == (1, 0, 1)
        assert statuses(second, 'h1') == [TaskStatus.OK, TaskStatus.SKIPPED]
        assert second.entries_for('h1')[1].kind == 'conditional'

    @pytest.mark.asyncio
    async def test_failure_halts_only_the_failing_host(self, converge, remote, world):
        """h1 fails at the second task; h2 completes every task."""
        world.set_result('/usr/local/bin/healthcheck', rc=1, stderr='unhealthy', host='h1')

        report = await converge("""
- hosts: web
  tasks:
    - name: start
      debug: msg=start
    - name: health
      command: /usr/local/bin/healthcheck
      changed_when: false
    - name: after
      debug: msg=after
    - name: done
      debug: msg=done
""", inventory=TWO_WEB, remote=remote)

        h1 = report.stats['h1']
        assert (h1.ok, h1.failed, h1.skipped) == (1, 1, 2)
        assert [e.kind for e in report.entries_for('h1')[2:]] == ['host_failed', 'host_failed']

        h2 = report.stats['h2']
        assert (h2.ok, h2.failed, h2.skipped) == (4, 0, 0)

        assert report.failed_hosts() == ['h1']
        assert report.finalize() == ExitCode.HOST_FAILED


class TestFailures:
    """Failure kinds and how far they reach."""

    @pytest.mark.asyncio
    async def test_ignore_errors_counts_as_ignored(self, converge):
        """An ignored failure does not halt the host or fail the run."""
        report = await converge("""
- hosts: web
  tasks:
    - name: break
      fail:
        msg: boom
      ignore_errors: yes
    - name: carry on
      debug: msg=next
""")
        stats = report.stats['web1']
        assert (stats.ok, stats.failed, stats.ignored) == (1, 0, 1)
        assert report.entries_for('web1')[0].ignored
        assert report.finalize() == ExitCode.SUCCESS
        assert report.problems()[0]['ignored'] is True

    @pytest.mark.asyncio
    async def test_unreachable_host(self, converge, make_remote):
        """An unreachable host stops; the other host is unaffected."""
        remote = make_remote(unreachable={'web2'})
        report = await converge("""
- hosts: web
  tasks:
    - debug: msg=one
    - debug: msg=two
""", remote=remote)

        entries = report.entries_for('web2')
        assert [e.status for e in entries] == [TaskStatus.UNREACHABLE, TaskStatus.SKIPPED]
        assert entries[0].kind == 'unreachable'
        assert 'No route to host' in entries[0].message
        assert report.stats['web2'].unreachable == 1
        assert report.stats['web1'].ok == 2
        assert report.finalize() == ExitCode.HOST_FAILED

    @pytest.mark.asyncio
    async def test_task_timeout(self, converge, remote, world):
        """A slow invocation fails with kind 'timeout'."""
        world.delays['sleep 5'] = 5
        report = await converge("""
- hosts: web
  tasks:
    - name: slow
      command: sleep 5
      timeout: 0.05
    - name: later
      debug: msg=later
""", inventory=ONE_HOST, remote=remote)

        slow, later = report.entries_for('h1')
        assert slow.status == TaskStatus.FAILED
        assert slow.kind == 'timeout'
        assert 'timed out' in slow.message
        assert later.kind == 'host_failed'
        assert remote.closed.count('h1') >= 1

    @pytest.mark.asyncio
    async def test_timeout_drops_the_connection(self, converge, remote, world):
        """The unit after a timeout runs on a fresh connection."""
        world.delays['sleep 5'] = 5
        report = await converge("""
- hosts: web
  tasks:
    - command: sleep 5
      timeout: 0.05
      ignore_errors: true
    - debug: msg=later
""", inventory=ONE_HOST, remote=remote)
        assert statuses(report, 'h1') == [TaskStatus.FAILED, TaskStatus.OK]
        assert remote.opened == ['h1', 'h1']
        assert remote.closed == ['h1', 'h1']

    @pytest.mark.asyncio
    async def test_settle_delay_between_units(self, converge, monkeypatch):
        delays = []
        sleep = asyncio.sleep

        async def recording_sleep(delay, *args, **kwargs):
            delays.append(delay)
            await sleep(0)

        monkeypatch.setattr(asyncio, 'sleep', recording_sleep)
        report = await converge("""
- hosts: web
  tasks:
    - debug: msg=one
    - debug: msg=two
    - debug: msg=three
""", inventory=ONE_HOST, config=RunConfig(settle_delay=0.5))
        assert report.stats['h1'].ok == 3
        assert [d for d in delays if d] == [0.5, 0.5]

    @pytest.mark.asyncio
    async def test_run_wide_timeout_from_config(self, converge, remote, world):
        world.delays['sleep 5'] = 5
        report = await converge("""
- hosts: web
  tasks:
    - command: sleep 5
""", inventory=ONE_HOST, remote=remote, config=RunConfig(task_timeout=0.05))
        assert report.entries_for('h1')[0].kind == 'timeout'

    @pytest.mark.asyncio
    async def test_any_errors_fatal_cancels_everything(self, converge, remote, world):
        """The fatal policy stops all hosts and later plays."""
        world.set_result('/usr/bin/healthcheck', rc=2, host='web1')
        report = await converge("""
- name: first
  hosts: web
  tasks:
    - name: healthcheck
      command: /usr/bin/healthcheck
    - name: after
      debug: msg=after
- name: second
  hosts: web
  tasks:
    - name: never reached
      debug: msg=nope
""", remote=remote, config=RunConfig(any_errors_fatal=True, forks=1))

        web1 = report.entries_for('web1')
        assert web1[0].status == TaskStatus.FAILED
        assert web1[1].kind == 'cancelled'
        assert all(e.kind == 'cancelled' for e in report.entries_for('web2'))
        assert remote.modules_on('web2') == []
        assert not [e for e in report.entries if e.play == 'second']

    @pytest.mark.asyncio
    async def test_assert_failure_is_a_precondition(self, converge):
        report = await converge("""
- hosts: web
  vars:
    replicas: 1
  tasks:
    - assert:
        that:
          - replicas > 2
        fail_msg: need more replicas
""", inventory=ONE_HOST)
        entry = report.entries_for('h1')[0]
        assert entry.status == TaskStatus.FAILED
        assert entry.kind == 'precondition'
        assert 'need more replicas' in entry.message

    @pytest.mark.asyncio
    async def test_undefined_variable_in_params(self, converge):
        """A template error fails the unit and halts the host."""
        report = await converge("""
- hosts: web
  tasks:
    - debug:
        msg: "{{ missing_var }}"
    - debug: msg=next
""", inventory=ONE_HOST)
        first, second = report.entries_for('h1')
        assert first.kind == 'template'
        assert 'missing_var' in first.message
        assert second.kind == 'host_failed'

    @pytest.mark.asyncio
    async def test_undefined_variable_in_when(self, converge):
        report = await converge("""
- hosts: web
  tasks:
    - debug: msg=guarded
      when: missing_flag == 1
""", inventory=ONE_HOST)
        entry = report.entries_for('h1')[0]
        assert entry.status == TaskStatus.FAILED
        assert entry.kind == 'template'


class TestRegisterAndFacts:
    """Registered values flow forward on the same host."""

    @pytest.mark.asyncio
    async def test_registered_output_from_shared_world(self, converge, remote, world):
        """A task sees what an earlier task registered."""
        world.set_result('cat /etc/app_version', stdout='2.4.1\n')
        report = await converge("""
- hosts: web
  tasks:
    - command: cat /etc/app_version
      register: version
      changed_when: false
    - name: show
      debug:
        msg: "running {{ version.stdout }}"
""", inventory=ONE_HOST, remote=remote)
        assert report.entries_for('h1')[1].message == "running 2.4.1"

    @pytest.mark.asyncio
    async def test_set_fact_feeds_deferred_loop(self, converge, remote, world):
        """A loop over a fact set at run time expands when it is reached."""
        report = await converge("""
- hosts: web
  tasks:
    - set_fact:
        packages: [nginx, redis]
    - name: install
      command: "install {{ item }}"
      loop: "{{ packages }}"
      register: installs
    - assert:
        that: installs.results | length == 2
""", inventory=ONE_HOST, remote=remote)

        assert world.commands_on('h1') == ['install nginx', 'install redis']
        stats = report.stats['h1']
        assert (stats.ok, stats.changed, stats.failed) == (2, 2, 0)

    @pytest.mark.asyncio
    async def test_empty_deferred_loop_is_skipped(self, converge):
        report = await converge("""
- hosts: web
  tasks:
    - set_fact:
        nothing: []
    - debug:
        msg: "{{ item }}"
      loop: "{{ nothing }}"
""", inventory=ONE_HOST)
        entry = report.entries_for('h1')[1]
        assert entry.status == TaskStatus.SKIPPED
        assert entry.kind == 'empty_loop'

    @pytest.mark.asyncio
    async def test_loop_registers_results_and_index_var(self, converge):
        report = await converge("""
- hosts: web
  tasks:
    - debug:
        msg: "{{ idx }}:{{ item }}"
      loop: [a, b]
      loop_control:
        index_var: idx
      register: out
    - assert:
        that:
          - out.results | map(attribute='msg') | list == ['0:a', '1:b']
          - out.results[1].item == 'b'
          - not out.changed
""", inventory=ONE_HOST)
        assert [e.message for e in report.entries_for('h1')[:2]] == ['0:a', '1:b']
        assert report.entries_for('h1')[2].status == TaskStatus.OK

    @pytest.mark.asyncio
    async def test_skipped_task_still_registers(self, converge):
        report = await converge("""
- hosts: web
  tasks:
    - command: /bin/healthcheck
      when: false
      register: healthcheck
    - debug: msg=healthcheck was skipped
      when: healthcheck is skipped
""", inventory=ONE_HOST)
        assert statuses(report, 'h1') == [TaskStatus.SKIPPED, TaskStatus.OK]

    @pytest.mark.asyncio
    async def test_facts_persist_across_plays(self, converge):
        report = await converge("""
- name: one
  hosts: web
  tasks:
    - set_fact:
        release: "1.0"
- name: two
  hosts: web
  tasks:
    - debug:
        msg: "{{ release }}"
""", inventory=ONE_HOST)
        assert report.entries_for('h1')[1].message == "1.0"

    @pytest.mark.asyncio
    async def test_gather_facts(self, converge, remote, world):
        world.set_result('uname -s', stdout='Linux\n')
        report = await converge("""
- hosts: web
  gather_facts: true
  tasks:
    - debug:
        msg: "{{ ansible_system }}/{{ ansible_facts.ansible_system }}"
""", inventory=ONE_HOST, remote=remote)
        entries = report.entries_for('h1')
        assert entries[0].task == 'Gathering Facts'
        assert entries[1].message == 'Linux/Linux'

    @pytest.mark.asyncio
    async def test_gather_facts_date_time(self, converge, remote, world):
        world.set_result(DATE_COMMAND, stdout='2024-05-01 12:30:45 1714566645 UTC\n2024-05-01T12:30:45Z\n')
        report = await converge("""
- hosts: web
  gather_facts: true
  tasks:
    - debug:
        msg: "{{ ansible_date_time.iso8601 }} {{ ansible_date_time.epoch }}"
""", inventory=ONE_HOST, remote=remote)
        assert report.entries_for('h1')[1].message == '2024-05-01T12:30:45Z 1714566645'

    @pytest.mark.asyncio
    async def test_task_vars_are_visible(self, converge):
        report = await converge("""
- hosts: web
  vars:
    greeting: hello
  tasks:
    - debug:
        msg: "{{ greeting }} {{ target }}"
      vars:
        target: world
""", inventory=ONE_HOST)
        assert report.entries_for('h1')[0].message == 'hello world'


class TestChangedFailedWhen:

    @pytest.mark.asyncio
    async def test_failed_when_overrides_rc(self, converge, remote, world):
        """grep's rc=1 (no match) is not a failure here."""
        world.set_result('grep -q needle /etc/haystack', rc=1)
        report = await converge("""
- hosts: web
  tasks:
    - name: search
      command: grep -q needle /etc/haystack
      register: search
      failed_when: search.rc > 1
      changed_when: false
""", inventory=ONE_HOST, remote=remote)
        assert statuses(report, 'h1') == [TaskStatus.OK]

    @pytest.mark.asyncio
    async def test_failed_when_on_output(self, converge, remote, world):
        world.set_result('/opt/deploy', stdout='ERROR: disk full')
        report = await converge("""
- hosts: web
  tasks:
    - command: /opt/deploy
      failed_when: "'ERROR' in result.stdout"
""", inventory=ONE_HOST, remote=remote)
        assert statuses(report, 'h1') == [TaskStatus.FAILED]


class TestHandlers:

    PLAYBOOK = """
- hosts: web
  tasks:
    - name: write config
      copy: content=a dest=/etc/app.conf
      notify: restart app
    - name: write env
      copy: content=b dest=/etc/app.env
      notify: restart app
  handlers:
    - name: restart app
      command: systemctl restart app
"""

    @pytest.mark.asyncio
    async def test_handler_runs_once_per_host(self, converge, make_remote, world):
        report = await converge(self.PLAYBOOK, remote=make_remote())
        for host in ('web1', 'web2'):
            assert world.commands_on(host).count('systemctl restart app') == 1
            assert report.entries_for(host)[-1].task == 'restart app'

    @pytest.mark.asyncio
    async def test_unchanged_tasks_do_not_notify(self, converge, make_remote, world):
        await converge(self.PLAYBOOK, remote=make_remote())
        world.commands.clear()
        await converge(self.PLAYBOOK, remote=make_remote())
        assert 'systemctl restart app' not in world.commands_on('web1')

    @pytest.mark.asyncio
    async def test_listen_alias(self, converge, remote, world):
        await converge("""
- hosts: web
  tasks:
    - copy: content=x dest=/etc/nginx.conf
      notify: web config changed
  handlers:
    - name: restart nginx
      command: systemctl restart nginx
      listen: web config changed
""", inventory=ONE_HOST, remote=remote)
        assert world.commands_on('h1') == ['systemctl restart nginx']

    FAILING = """
- hosts: web
  tasks:
    - copy: content=x dest=/etc/app.conf
      notify: restart app
    - command: /bin/broken
  handlers:
    - name: restart app
      command: systemctl restart app
"""

    @pytest.mark.asyncio
    async def test_failed_host_drops_handlers(self, converge, remote, world):
        world.set_result('/bin/broken', rc=1)
        await converge(self.FAILING, inventory=ONE_HOST, remote=remote)
        assert 'systemctl restart app' not in world.commands_on('h1')

    @pytest.mark.asyncio
    async def test_force_handlers(self, converge, remote, world):
        world.set_result('/bin/broken', rc=1)
        report = await converge(self.FAILING, inventory=ONE_HOST, remote=remote,
                                config=RunConfig(force_handlers=True))
        assert 'systemctl restart app' in world.commands_on('h1')
        assert report.stats['h1'].failed == 1

    @pytest.mark.asyncio
    async def test_handler_can_notify_another_handler(self, converge, remote, world):
        report = await converge("""
- hosts: web
  tasks:
    - copy: content=x dest=/etc/app.conf
      notify: render unit
  handlers:
    - name: render unit
      copy: content=unit dest=/etc/app.service
      notify: restart app
    - name: restart app
      command: systemctl restart app
      notify: render unit
""", inventory=ONE_HOST, remote=remote)
        assert world.commands_on('h1') == ['systemctl restart app']
        assert world.files[('h1', '/etc/app.service')] == b'unit'
        assert [e.task for e in report.entries_for('h1')[-2:]] == ['render unit', 'restart app']
        assert report.stats['h1'].changed == 3


class TestCheckMode:

    @pytest.mark.asyncio
    async def test_check_mode_never_mutates(self, converge, remote, world):
        """Check mode predicts changes without writing or running commands."""
        report = await converge("""
- hosts: web
  tasks:
    - copy:
        content: hello
        dest: /etc/app.conf
    - command: touch /tmp/flag
    - file: path=/srv/data state=directory
""", inventory=ONE_HOST, remote=remote, config=RunConfig(check_mode=True))

        assert world.files == {}
        assert world.dirs == set()
        assert world.commands_on('h1') == []
        assert all(call.check_mode for call in remote.calls)
        assert statuses(report, 'h1') == [TaskStatus.CHANGED, TaskStatus.SKIPPED, TaskStatus.CHANGED]

    @pytest.mark.asyncio
    async def test_task_can_opt_out_of_check_mode(self, converge, remote, world):
        await converge("""
- hosts: web
  tasks:
    - command: /usr/bin/query
      check_mode: false
""", inventory=ONE_HOST, remote=remote, config=RunConfig(check_mode=True))
        assert world.commands_on('h1') == ['/usr/bin/query']

    @pytest.mark.asyncio
    async def test_become_is_passed_through(self, converge, remote):
        await converge("""
- hosts: web
  become: true
  tasks:
    - command: /usr/bin/id
      become_user: postgres
""", inventory=ONE_HOST, remote=remote)
        escalate = remote.calls[0].escalate
        assert escalate.user == 'postgres'
        assert escalate.method == 'sudo'


class TestRedaction:

    @pytest.mark.asyncio
    async def test_no_log_hides_output(self, converge):
        report = await converge("""
- hosts: web
  vars:
    api_token: abc123
  tasks:
    - debug:
        msg: "{{ api_token }}"
      no_log: true
""", inventory=ONE_HOST)
        entry = report.entries_for('h1')[0]
        assert entry.message == NO_LOG_MESSAGE
        assert entry.params == NO_LOG_MESSAGE
        assert 'abc123' not in report.to_json()

    @pytest.mark.asyncio
    async def test_vault_values_are_masked(self, converge):
        config = RunConfig(extra_vars={'db_password': VaultText('hunter2')})
        report = await converge("""
- hosts: web
  tasks:
    - debug:
        msg: "password is {{ db_password }}"
""", inventory=ONE_HOST, config=config)
        assert report.entries_for('h1')[0].message == f"password is {SECRET_MASK}"
        assert 'hunter2' not in report.to_json()

    @pytest.mark.asyncio
    async def test_no_log_reaches_the_transport(self, converge, remote):
        await converge("""
- hosts: web
  tasks:
    - command: /usr/bin/login --token abc123
      no_log: true
    - command: /usr/bin/true
""", inventory=ONE_HOST, remote=remote)
        assert [call.no_log for call in remote.calls] == [True, False]

    @pytest.mark.asyncio
    async def test_no_log_hides_module_errors_from_logs(self, converge, caplog):
        with caplog.at_level(logging.ERROR, logger='converge.engine.executor'):
            report = await converge("""
- hosts: web
  tasks:
    - ping: data=crash
      no_log: true
""", inventory=ONE_HOST)
        assert report.stats['h1'].failed == 1
        assert 'boom' not in caplog.text
        assert '<hidden, no_log>' in caplog.text

    @pytest.mark.asyncio
    async def test_module_error_logs_mask_vault_values(self, converge, remote, monkeypatch, caplog):

        async def leaky_invoke(connection, module_name, params, **kwargs):
            raise RuntimeError(f"cannot use {params['msg']}")

        monkeypatch.setattr(remote, 'invoke', leaky_invoke)

        config = RunConfig(extra_vars={'db_password': VaultText('hunter2')})
        with caplog.at_level(logging.ERROR, logger='converge.engine.executor'):
            report = await converge("""
- hosts: web
  tasks:
    - debug:
        msg: "{{ db_password }}"
""", inventory=ONE_HOST, remote=remote, config=config)
        assert report.stats['h1'].failed == 1
        assert 'hunter2' not in caplog.text
        assert f"cannot use {SECRET_MASK}" in caplog.text

    @pytest.mark.asyncio
    async def test_inline_vault_in_task_args_is_masked(self, converge):
        vault = VaultLib([VaultSecret('pw')])
        report = await converge(f"""
- hosts: web
  tasks:
    - debug:
        msg: !vault |
{indent(vault.encrypt('hunter2'), 10)}
""", inventory=ONE_HOST, vault=vault)
        assert report.entries_for('h1')[0].message == SECRET_MASK
        assert 'hunter2' not in report.to_json()

    @pytest.mark.asyncio
    async def test_inline_vault_in_task_vars_is_masked(self, converge):
        vault = VaultLib([VaultSecret('pw')])
        report = await converge(f"""
- hosts: web
  tasks:
    - debug:
        msg: "token={{{{ token }}}}"
      vars:
        token: !vault |
{indent(vault.encrypt('hunter2'), 10)}
""", inventory=ONE_HOST, vault=vault)
        assert report.entries_for('h1')[0].message == f"token={SECRET_MASK}"
        assert 'hunter2' not in report.to_json()


@pytest.mark.asyncio
async def test_executor_is_reusable_within_one_event_loop(converge):
    """Two runs back to back on the same loop do not interfere."""
    first, second = await asyncio.gather(
        converge("- hosts: web\n  tasks:\n    - debug: msg=a\n", inventory=ONE_HOST),
        converge("- hosts: web\n  tasks:\n    - debug: msg=a\n", inventory=ONE_HOST),
    )
    assert first.stats['h1'].ok == 1
    assert second.stats['h1'].ok == 1
