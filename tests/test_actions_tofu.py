"""Tests for actions.tofu (OpenTofu runner and plan JSON parsing)."""

import json
import sys
from pathlib import Path
from unittest.mock import patch

sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from actions.tofu import TofuRunner, create_temp_tfvars, parse_plan_json
from config import EnvironmentConfig
from modules import ModuleSpec
from orchestrator.planner import PlanArtifact, ResourceDiff

PLAN_JSON = json.dumps({
    'resource_changes': [
        {'address': 'aws_vpc.main', 'change': {'actions': ['create']}},
        {'address': 'aws_subnet.a', 'change': {'actions': ['update']}},
        {'address': 'aws_instance.web', 'change': {'actions': ['delete', 'create']}},
        {'address': 'aws_eip.old', 'change': {'actions': ['delete']}},
        {'address': 'aws_iam_role.ci', 'change': {'actions': ['no-op']}},
        {'address': 'data.aws_ami.debian', 'change': {'actions': ['read']}},
    ],
    'planned_values': {
        'outputs': {
            'subnet_id': {'sensitive': False, 'value': 'subnet-123'},
            'vpc_arn': {'sensitive': False},
        },
    },
})


def _spec(tmp_path, module_id='network'):
    src = tmp_path / 'tofu' / module_id
    src.mkdir(parents=True, exist_ok=True)
    (src / 'main.tf').write_text('resource "null_resource" "x" {}\n')
    return ModuleSpec(id=module_id, environment='nonprod', source=str(src))


ENV = EnvironmentConfig(name='nonprod', variables={'region': 'us-east-1'})


class TestParsePlanJson:
    """Tests for parse_plan_json."""

    def test_classifies_actions(self):
        diff, _ = parse_plan_json(PLAN_JSON)
        assert diff.added == ('aws_vpc.main',)
        assert diff.changed == ('aws_instance.web', 'aws_subnet.a')
        assert diff.removed == ('aws_eip.old',)

    def test_outputs(self):
        _, outputs = parse_plan_json(PLAN_JSON)
        assert outputs == {'subnet_id': 'subnet-123', 'vpc_arn': None}

    def test_empty_plan(self):
        diff, outputs = parse_plan_json('')
        assert diff == ResourceDiff()
        assert outputs == {}


class TestCreateTempTfvars:
    """Tests for create_temp_tfvars."""

    def test_unique_files(self):
        a = create_temp_tfvars('nonprod', 'data/db')
        b = create_temp_tfvars('nonprod', 'data/db')
        try:
            assert a != b
            assert a.exists()
            assert 'data__db' in a.name
        finally:
            a.unlink()
            b.unlink()


class TestTofuRunnerPlan:
    """Tests for TofuRunner.plan."""

    def test_success(self, tmp_path):
        runner = TofuRunner(state_dir=tmp_path / 'states')
        spec = _spec(tmp_path)
        written = {}

        def fake_run(cmd, cwd=None, timeout=600, capture=True, env=None):
            if cmd[1] == 'plan':
                var_file = next(a for a in cmd if a.startswith('-var-file='))
                written.update(json.loads(Path(var_file.split('=', 1)[1]).read_text()))
                written['_env'] = env
                return 2, '', ''
            if cmd[1] == 'show':
                return 0, PLAN_JSON, ''
            return 0, '', ''

        with patch('actions.tofu.run_command', side_effect=fake_run) as mock_cmd:
            outcome = runner.plan(spec, ENV, {'cidr': '10.0.0.0/16'})

        assert outcome.success is True
        assert outcome.diff.summary() == '+1 ~2 -1'
        assert outcome.outputs['subnet_id'] == 'subnet-123'
        assert written['region'] == 'us-east-1'
        assert written['cidr'] == '10.0.0.0/16'
        assert written['_env']['TF_DATA_DIR'] == str(tmp_path / 'states' / 'nonprod' / 'network' / 'data')

        verbs = [c.args[0][1] for c in mock_cmd.call_args_list]
        assert verbs == ['init', 'plan', 'show']
        plan_cmd = mock_cmd.call_args_list[1].args[0]
        assert '-detailed-exitcode' in plan_cmd
        assert f"-state={tmp_path / 'states' / 'nonprod' / 'network' / 'terraform.tfstate'}" in plan_cmd
        assert '-destroy' not in plan_cmd
        assert outcome.plan_file.startswith(str(tmp_path / 'states' / 'nonprod' / 'network' / 'plans'))

    def test_no_changes_exit_code(self, tmp_path):
        runner = TofuRunner(state_dir=tmp_path / 'states')
        with patch('actions.tofu.run_command') as mock_cmd:
            mock_cmd.side_effect = [
                (0, '', ''),  # init
                (0, '', ''),  # plan, no changes
                (0, json.dumps({'resource_changes': []}), ''),  # show
            ]
            outcome = runner.plan(_spec(tmp_path), ENV, {})
        assert outcome.success is True
        assert outcome.diff.has_changes is False

    def test_destroy_flag(self, tmp_path):
        runner = TofuRunner(state_dir=tmp_path / 'states')
        with patch('actions.tofu.run_command') as mock_cmd:
            mock_cmd.side_effect = [(0, '', ''), (2, '', ''), (0, '{}', '')]
            outcome = runner.plan(_spec(tmp_path), ENV, {}, destroy=True)
        assert outcome.success is True
        assert '-destroy' in mock_cmd.call_args_list[1].args[0]
        assert Path(outcome.plan_file).name.startswith('destroy-')

    def test_init_failure(self, tmp_path):
        runner = TofuRunner(state_dir=tmp_path / 'states')
        with patch('actions.tofu.run_command') as mock_cmd:
            mock_cmd.side_effect = [(1, '', 'Error: provider not found')]
            outcome = runner.plan(_spec(tmp_path), ENV, {})
        assert outcome.success is False
        assert 'tofu init failed' in outcome.message
        assert 'provider not found' in outcome.message

    def test_plan_error_exit_code(self, tmp_path):
        runner = TofuRunner(state_dir=tmp_path / 'states')
        with patch('actions.tofu.run_command') as mock_cmd:
            mock_cmd.side_effect = [(0, '', ''), (1, '', 'Error: invalid reference')]
            outcome = runner.plan(_spec(tmp_path), ENV, {})
        assert outcome.success is False
        assert 'tofu plan failed' in outcome.message

    def test_unreadable_show_output(self, tmp_path):
        runner = TofuRunner(state_dir=tmp_path / 'states')
        with patch('actions.tofu.run_command') as mock_cmd:
            mock_cmd.side_effect = [(0, '', ''), (2, '', ''), (0, 'not json', '')]
            outcome = runner.plan(_spec(tmp_path), ENV, {})
        assert outcome.success is False
        assert 'Unreadable plan JSON' in outcome.message

    def test_missing_source(self, tmp_path):
        runner = TofuRunner(state_dir=tmp_path / 'states')
        spec = ModuleSpec(id='ghost', environment='nonprod', source=str(tmp_path / 'missing'))
        with patch('actions.tofu.run_command') as mock_cmd:
            outcome = runner.plan(spec, ENV, {})
        assert outcome.success is False
        assert 'source not found' in outcome.message
        mock_cmd.assert_not_called()

    def test_tfvars_cleaned_up(self, tmp_path):
        runner = TofuRunner(state_dir=tmp_path / 'states')
        tfvars = tmp_path / 'vars.json'
        tfvars.touch()
        with patch('actions.tofu.create_temp_tfvars', return_value=tfvars), \
             patch('actions.tofu.run_command', return_value=(1, '', 'boom')):
            runner.plan(_spec(tmp_path), ENV, {})
        assert not tfvars.exists()


class TestTofuRunnerApply:
    """Tests for TofuRunner.apply and TofuRunner.destroy."""

    def _artifact(self, plan_file, operation='apply'):
        return PlanArtifact('network', 'nonprod', operation, ResourceDiff(added=('x',)), 'fp',
                            plan_file=str(plan_file) if plan_file else None)

    def test_apply_consumes_plan(self, tmp_path):
        runner = TofuRunner(state_dir=tmp_path / 'states')
        plan_file = tmp_path / 'apply.tfplan'
        plan_file.write_bytes(b'plan')
        with patch('actions.tofu.run_command', return_value=(0, 'Apply complete!', '')) as mock_cmd:
            result = runner.apply(_spec(tmp_path), ENV, self._artifact(plan_file))

        assert result.success is True
        cmd = mock_cmd.call_args.args[0]
        assert cmd[:3] == ['tofu', 'apply', '-input=false']
        assert cmd[-1] == str(plan_file)
        assert not plan_file.exists()

    def test_apply_failure(self, tmp_path):
        runner = TofuRunner(state_dir=tmp_path / 'states')
        plan_file = tmp_path / 'apply.tfplan'
        plan_file.write_bytes(b'plan')
        with patch('actions.tofu.run_command', return_value=(1, '', 'Error: quota exceeded')):
            result = runner.apply(_spec(tmp_path), ENV, self._artifact(plan_file))
        assert result.success is False
        assert 'quota exceeded' in result.message
        assert not plan_file.exists()

    def test_missing_plan_file(self, tmp_path):
        runner = TofuRunner(state_dir=tmp_path / 'states')
        with patch('actions.tofu.run_command') as mock_cmd:
            result = runner.apply(_spec(tmp_path), ENV, self._artifact(tmp_path / 'gone.tfplan'))
        assert result.success is False
        assert 'Saved plan not found' in result.message
        mock_cmd.assert_not_called()

    def test_destroy(self, tmp_path):
        runner = TofuRunner(state_dir=tmp_path / 'states', tofu_binary='/opt/tofu')
        plan_file = tmp_path / 'destroy.tfplan'
        plan_file.write_bytes(b'plan')
        with patch('actions.tofu.run_command', return_value=(0, '', '')) as mock_cmd:
            result = runner.destroy(_spec(tmp_path), ENV, self._artifact(plan_file, 'destroy'))
        assert result.success is True
        assert 'destroy' in result.message
        assert mock_cmd.call_args.args[0][0] == '/opt/tofu'


class TestTofuRunnerDiscard:
    """Tests for TofuRunner.discard."""

    def test_unused_plan_removed(self, tmp_path):
        runner = TofuRunner(state_dir=tmp_path / 'states')

        def fake_run(cmd, cwd=None, timeout=600, capture=True, env=None):
            if cmd[1] == 'plan':
                out = next(a for a in cmd if a.startswith('-out='))
                Path(out.split('=', 1)[1]).write_bytes(b'plan')
                return 0, '', ''
            if cmd[1] == 'show':
                return 0, json.dumps({'resource_changes': []}), ''
            return 0, '', ''

        with patch('actions.tofu.run_command', side_effect=fake_run):
            outcome = runner.plan(_spec(tmp_path), ENV, {})
        plan_file = Path(outcome.plan_file)
        assert plan_file.exists()

        artifact = PlanArtifact('network', 'nonprod', 'apply', outcome.diff, 'fp', plan_file=outcome.plan_file)
        runner.discard(artifact)
        assert not plan_file.exists()
        assert list((tmp_path / 'states' / 'nonprod' / 'network' / 'plans').iterdir()) == []

        # Already consumed or discarded
        runner.discard(artifact)

    def test_artifact_without_plan_file(self, tmp_path):
        runner = TofuRunner(state_dir=tmp_path / 'states')
        runner.discard(PlanArtifact('network', 'nonprod', 'apply', ResourceDiff(), 'fp'))
