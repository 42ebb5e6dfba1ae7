"""Tests for CLI module (cli.py dispatch and engine/cli.py verbs)."""

import json
import logging
import sys
from pathlib import Path

import pytest
import yaml

sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from cli import dispatch_verb, main
from conftest import web_document


@pytest.fixture(autouse=True)
def restore_logging():
    """--json-output and --verbose reconfigure the root logger."""
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


@pytest.fixture
def workspace(tmp_path, monkeypatch):
    """Working directory with web.yaml and an engine.yaml using a persistent simulator."""
    for name in ('PROVISION_CONFIG', 'PROVISION_STATE_DIR', 'PROVISION_CONCURRENCY', 'PROVISION_API_TOKEN'):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)
    (tmp_path / 'web.yaml').write_text(yaml.safe_dump(web_document()))
    (tmp_path / 'engine.yaml').write_text(yaml.safe_dump({
        'engine': {'concurrency': 4, 'backoff_base': 0, 'poll_interval': 0.01},
        'state': {'dir': 'state'},
        'provider': {'type': 'memory', 'path': 'sim.json'},
    }))
    return tmp_path


class TestMain:
    """Tests for top-level dispatch."""

    def test_no_args_prints_usage(self, capsys):
        assert main([]) == 1
        out = capsys.readouterr().out
        assert 'Usage: provision <verb>' in out
        for verb in ('plan', 'apply', 'destroy', 'validate', 'output'):
            assert verb in out

    def test_help(self, capsys):
        assert main(['--help']) == 0
        assert 'Commands:' in capsys.readouterr().out

    def test_version(self, capsys):
        assert main(['--version']) == 0
        assert capsys.readouterr().out.startswith('provision ')

    def test_unknown_verb(self, capsys):
        assert dispatch_verb('bogus', []) == 1
        assert "Unknown command 'bogus'" in capsys.readouterr().out


class TestValidate:
    """Tests for the validate verb."""

    def test_valid(self, workspace, capsys):
        assert main(['validate', '-f', 'web.yaml']) == 0
        assert "Declarations 'web' are valid (4 instances)" in capsys.readouterr().out

    def test_verbose_shows_order(self, workspace, capsys):
        assert main(['validate', '-f', 'web.yaml', '--verbose']) == 0
        out = capsys.readouterr().out
        assert out.index('network.main') < out.index('load-balancer.web')
        destroy = out[out.index('Destroy order:'):]
        assert destroy.index('load-balancer.web') < destroy.index('network.main')

    def test_cycle(self, workspace, capsys):
        doc = {'name': 'bad', 'resources': [
            {'type': 'a', 'name': 'x', 'attributes': {'peer': {'ref': 'b.y.id'}}},
            {'type': 'b', 'name': 'y', 'attributes': {'peer': {'ref': 'a.x.id'}}},
        ]}
        assert main(['validate', '--declarations-json', json.dumps(doc)]) == 1
        assert 'Dependency cycle: a.x -> b.y -> a.x' in capsys.readouterr().err

    def test_unknown_reference(self, workspace, capsys):
        doc = {'name': 'bad', 'resources': [
            {'type': 'subnet', 'name': 'a', 'attributes': {'network_id': {'ref': 'network.missing.id'}}},
        ]}
        assert main(['validate', '--declarations-json', json.dumps(doc)]) == 1
        assert "unknown resource 'network.missing'" in capsys.readouterr().err

    def test_missing_file_argument(self, workspace, capsys):
        assert main(['validate']) == 1
        assert 'specify declarations' in capsys.readouterr().err


class TestPlanApplyDestroy:
    """Tests for plan, apply, output and destroy against the simulator."""

    def test_plan(self, workspace, capsys):
        assert main(['plan', '-f', 'web.yaml']) == 0
        out = capsys.readouterr().out
        assert '+ network.main [network] create' in out
        assert '+ load-balancer.web [load-balancer] create' in out
        assert 'cidr_block = "10.0.1.0/24"' in out
        assert '4 to create' in out
        assert not (workspace / 'state').exists()

    def test_plan_json(self, workspace, capsys):
        assert main(['plan', '-f', 'web.yaml', '--json-output']) == 0
        data = json.loads(capsys.readouterr().out)
        assert data['summary']['create'] == 4
        assert [c['id'] for c in data['changes']][0] == 'create:network.main'
        lb = data['changes'][-1]
        assert lb['desired_attributes']['subnets'] == ['(known after apply)', '(known after apply)']

    def test_apply_then_plan_is_unchanged(self, workspace, capsys):
        assert main(['apply', '-f', 'web.yaml', '--yes']) == 0
        out = capsys.readouterr().out
        assert 'Outputs:' in out
        assert 'lb_address = "web-lb-load-balancer-0004.lb.sim.internal"' in out
        assert len(list((workspace / 'state').iterdir())) == 4

        assert main(['plan', '-f', 'web.yaml']) == 0
        assert 'no changes (4 unchanged)' in capsys.readouterr().out

    def test_apply_json_output(self, workspace, capsys):
        assert main(['apply', '-f', 'web.yaml', '--yes', '--json-output']) == 0
        data = json.loads(capsys.readouterr().out)
        assert data['success'] is True
        assert data['counts'] == {'applied': 4}
        assert data['outputs']['lb_address'].endswith('.lb.sim.internal')

    def test_apply_prompts_and_aborts(self, workspace, capsys, monkeypatch):
        monkeypatch.setattr('builtins.input', lambda prompt: 'n')
        assert main(['apply', '-f', 'web.yaml']) == 1
        assert 'Aborted.' in capsys.readouterr().out
        assert not (workspace / 'state').exists()

    def test_apply_prompt_accepted(self, workspace, monkeypatch):
        monkeypatch.setattr('builtins.input', lambda prompt: 'y')
        assert main(['apply', '-f', 'web.yaml']) == 0

    def test_dry_run(self, workspace, capsys):
        assert main(['apply', '-f', 'web.yaml', '--dry-run']) == 0
        assert '4 to create' in capsys.readouterr().out
        assert not (workspace / 'state').exists()

    def test_invalid_concurrency(self, workspace, capsys):
        with pytest.raises(SystemExit) as exc_info:
            main(['apply', '-f', 'web.yaml', '--yes', '--concurrency', '0'])
        assert exc_info.value.code == 1
        assert '--concurrency must be >= 1' in capsys.readouterr().err

    def test_missing_declarations_file(self, workspace, capsys):
        with pytest.raises(SystemExit):
            main(['plan', '-f', 'missing.yaml'])
        assert 'Error loading declarations' in capsys.readouterr().err

    def test_output(self, workspace, capsys):
        main(['apply', '-f', 'web.yaml', '--yes'])
        capsys.readouterr()

        assert main(['output', '-f', 'web.yaml']) == 0
        assert capsys.readouterr().out.strip() == 'lb_address = "web-lb-load-balancer-0004.lb.sim.internal"'

    def test_output_before_apply_is_unknown(self, workspace, capsys):
        assert main(['output', '-f', 'web.yaml', '--json-output']) == 0
        assert json.loads(capsys.readouterr().out) == {'lb_address': '(known after apply)'}

    def test_sensitive_output(self, workspace, capsys):
        doc = web_document()
        doc['outputs']['lb_address'] = {'value': {'ref': 'load-balancer.web.dns_name'}, 'sensitive': True}
        (workspace / 'web.yaml').write_text(yaml.safe_dump(doc))
        main(['apply', '-f', 'web.yaml', '--yes'])
        capsys.readouterr()

        main(['output', '-f', 'web.yaml'])
        assert capsys.readouterr().out.strip() == 'lb_address = "(sensitive)"'
        main(['output', '-f', 'web.yaml', '--show-sensitive'])
        assert 'lb.sim.internal' in capsys.readouterr().out

    def test_destroy(self, workspace, capsys):
        main(['apply', '-f', 'web.yaml', '--yes'])
        capsys.readouterr()

        assert main(['destroy', '-f', 'web.yaml', '--yes']) == 0
        assert list((workspace / 'state').iterdir()) == []
        assert json.loads((workspace / 'sim.json').read_text())['objects'] == {}

    def test_destroy_prompt_declined(self, workspace, capsys, monkeypatch):
        main(['apply', '-f', 'web.yaml', '--yes'])
        capsys.readouterr()
        monkeypatch.setattr('builtins.input', lambda prompt: '')

        assert main(['destroy', '-f', 'web.yaml']) == 1
        out = capsys.readouterr().out
        assert 'WARNING: This will destroy 4 instance(s)' in out
        assert len(list((workspace / 'state').iterdir())) == 4

    def test_destroy_nothing(self, workspace, capsys):
        assert main(['destroy', '-f', 'web.yaml', '--yes']) == 0
        assert 'Nothing to destroy.' in capsys.readouterr().out

    def test_report_files(self, workspace):
        config = yaml.safe_load((workspace / 'engine.yaml').read_text())
        config['engine']['report_dir'] = 'reports'
        (workspace / 'engine.yaml').write_text(yaml.safe_dump(config))

        assert main(['apply', '-f', 'web.yaml', '--yes']) == 0
        names = sorted(p.name for p in (workspace / 'reports').iterdir())
        assert len(names) == 2
        assert names[0].endswith('.web.succeeded.json')
        assert names[1].endswith('.web.succeeded.md')

    def test_state_dir_flag(self, workspace):
        assert main(['apply', '-f', 'web.yaml', '--yes', '--state-dir', 'other']) == 0
        assert len(list((workspace / 'other').iterdir())) == 4
