"""Tests for actions.lint (module validation)."""

import json
import sys
from pathlib import Path
from unittest.mock import patch

sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from actions.lint import LintValidator, check_references, parse_tflint_json, parse_validate_json
from config import EnvironmentConfig
from modules import ModuleSpec

ENV = EnvironmentConfig(name='nonprod', variables={'region': 'us-east-1'})

VALID = json.dumps({'valid': True, 'error_count': 0, 'diagnostics': []})
INVALID = json.dumps({
    'valid': False,
    'error_count': 1,
    'diagnostics': [
        {
            'severity': 'error',
            'summary': 'Reference to undeclared input variable',
            'detail': 'An input variable with the name "cidr" has not been declared.',
            'range': {'filename': 'main.tf', 'start': {'line': 4}},
        },
        {'severity': 'warning', 'summary': 'Deprecated attribute'},
    ],
})


def _spec(tmp_path, inputs=None):
    src = tmp_path / 'tofu' / 'network'
    src.mkdir(parents=True, exist_ok=True)
    return ModuleSpec(id='network', environment='nonprod', source=str(src), inputs=inputs or {})


class TestParsers:
    """Tests for the JSON output parsers."""

    def test_validate_valid(self):
        assert parse_validate_json(VALID) == (True, [])

    def test_validate_errors_only(self):
        valid, errors = parse_validate_json(INVALID)
        assert valid is False
        assert errors == [
            'main.tf:4: Reference to undeclared input variable '
            '(An input variable with the name "cidr" has not been declared.)'
        ]

    def test_tflint_severity(self):
        output = json.dumps({
            'issues': [
                {'rule': {'name': 'terraform_unused_declarations', 'severity': 'warning'},
                 'message': 'variable "x" is declared but not used',
                 'range': {'filename': 'variables.tf', 'start': {'line': 1}}},
                {'rule': {'name': 'aws_instance_invalid_type', 'severity': 'error'},
                 'message': '"t9.huge" is an invalid value',
                 'range': {'filename': 'main.tf', 'start': {'line': 12}}},
            ],
            'errors': [],
        })
        errors, warnings = parse_tflint_json(output)
        assert errors == ['main.tf:12: aws_instance_invalid_type: "t9.huge" is an invalid value']
        assert len(warnings) == 1
        assert 'terraform_unused_declarations' in warnings[0]

    def test_tflint_errors_array(self):
        errors, _ = parse_tflint_json(json.dumps({'issues': [], 'errors': [{'message': 'plugin crashed'}]}))
        assert errors == ['tflint: plugin crashed']


class TestCheckReferences:
    """Tests for check_references."""

    def test_valid_references(self, tmp_path):
        spec = _spec(tmp_path, {'region': '${var.region}', 'vpc': '${core.vpc_id}'})
        assert check_references(spec, ENV) == []

    def test_undefined_variable(self, tmp_path):
        spec = _spec(tmp_path, {'tags': {'zone': '${var.zone}'}})
        assert check_references(spec, ENV) == ["input 'tags.zone' references undefined variable 'var.zone'"]

    def test_self_reference(self, tmp_path):
        spec = _spec(tmp_path, {'ids': ['${network.id}']})
        assert check_references(spec, ENV) == ["input 'ids[0]' references the module's own output 'id'"]


class TestLintValidator:
    """Tests for LintValidator.validate."""

    def test_passes(self, tmp_path):
        with patch('actions.lint.run_command') as mock_cmd:
            mock_cmd.side_effect = [(0, '', ''), (0, VALID, '')]
            report = LintValidator().validate(_spec(tmp_path), ENV)

        assert report.passed is True
        init_cmd = mock_cmd.call_args_list[0].args[0]
        assert init_cmd == ['tofu', 'init', '-backend=false', '-input=false']
        env = mock_cmd.call_args_list[0].kwargs['env']
        assert 'tf-validate-' in env['TF_DATA_DIR']

    def test_reference_errors_skip_tofu(self, tmp_path):
        with patch('actions.lint.run_command') as mock_cmd:
            report = LintValidator().validate(_spec(tmp_path, {'x': '${var.nope}'}), ENV)
        assert report.passed is False
        mock_cmd.assert_not_called()

    def test_missing_source(self, tmp_path):
        spec = ModuleSpec(id='network', environment='nonprod', source=str(tmp_path / 'missing'))
        report = LintValidator().validate(spec, ENV)
        assert report.passed is False
        assert 'source directory not found' in report.diagnostics[0]

    def test_no_source(self):
        report = LintValidator().validate(ModuleSpec(id='network', environment='nonprod'), ENV)
        assert report.diagnostics == ['module declares no source']

    def test_validate_errors(self, tmp_path):
        with patch('actions.lint.run_command') as mock_cmd:
            mock_cmd.side_effect = [(0, '', ''), (1, INVALID, '')]
            report = LintValidator().validate(_spec(tmp_path), ENV)
        assert report.passed is False
        assert 'undeclared input variable' in report.diagnostics[0]

    def test_init_failure(self, tmp_path):
        with patch('actions.lint.run_command', return_value=(1, '', 'Error: module not installed')):
            report = LintValidator().validate(_spec(tmp_path), ENV)
        assert report.passed is False
        assert 'tofu init failed' in report.diagnostics[0]

    def test_tflint_disabled_by_default(self, tmp_path):
        with patch('actions.lint.run_command') as mock_cmd:
            mock_cmd.side_effect = [(0, '', ''), (0, VALID, '')]
            LintValidator().validate(_spec(tmp_path), ENV)
        assert mock_cmd.call_count == 2

    def test_tflint_error_fails(self, tmp_path):
        tflint_out = json.dumps({'issues': [{'rule': {'name': 'r', 'severity': 'error'}, 'message': 'bad'}]})
        with patch('actions.lint.run_command') as mock_cmd:
            mock_cmd.side_effect = [(0, '', ''), (0, VALID, ''), (2, tflint_out, '')]
            report = LintValidator(tflint=True).validate(_spec(tmp_path), ENV)
        assert report.passed is False
        assert mock_cmd.call_args_list[2].args[0][:3] == ['tflint', '--format', 'json']

    def test_tflint_warnings_pass(self, tmp_path, caplog):
        tflint_out = json.dumps({'issues': [{'rule': {'name': 'r', 'severity': 'warning'}, 'message': 'meh'}]})
        with patch('actions.lint.run_command') as mock_cmd, caplog.at_level('WARNING'):
            mock_cmd.side_effect = [(0, '', ''), (0, VALID, ''), (2, tflint_out, '')]
            report = LintValidator(tflint=True).validate(_spec(tmp_path), ENV)
        assert report.passed is True
        assert len(report.diagnostics) == 1
        assert 'meh' in caplog.text
