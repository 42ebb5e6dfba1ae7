"""Tests for declaration module."""

import json
import sys
from pathlib import Path

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from config import ConfigError
from declaration import (
    SPLAT,
    Computed,
    CountIndex,
    DeclarationLoader,
    DeclarationSet,
    Lifecycle,
    ListValue,
    Literal,
    MapValue,
    Output,
    Reference,
    ResourceDeclaration,
    load_declarations,
    parse_reference,
    parse_value,
)


class TestParseReference:
    """Tests for the reference syntax."""

    def test_count_index(self):
        assert parse_reference('count.index') == CountIndex()

    def test_simple_attribute(self):
        ref = parse_reference('network.main.id')
        assert ref == Reference('network.main', ('id',), None)

    def test_type_with_dash(self):
        ref = parse_reference('load-balancer.web.dns_name')
        assert ref.target == 'load-balancer.web'
        assert ref.path == ('dns_name',)

    def test_explicit_index(self):
        ref = parse_reference('subnet.public[1].id')
        assert ref.target == 'subnet.public'
        assert ref.index == 1
        assert ref.path == ('id',)

    def test_count_index_as_index(self):
        ref = parse_reference('subnet.public[count.index].id')
        assert ref.index == CountIndex()

    def test_count_index_offset(self):
        ref = parse_reference('subnet.private[count.index + 2].id')
        assert ref.index == Computed('add', (CountIndex(), Literal(2)))
        assert str(ref) == 'subnet.private[count.index + 2].id'

    def test_splat(self):
        ref = parse_reference('subnet.public[*].id')
        assert ref.index == SPLAT
        assert str(ref) == 'subnet.public[*].id'

    def test_data_reference_with_list_path(self):
        ref = parse_reference('data.availability-zones.all.names[0]')
        assert ref.is_data
        assert ref.target == 'data.availability-zones.all'
        assert ref.path == ('names', 0)

    def test_nested_path(self):
        ref = parse_reference('network.main.tags.Name')
        assert ref.path == ('tags', 'Name')

    def test_data_reference_cannot_be_indexed(self):
        with pytest.raises(ConfigError, match='cannot be indexed'):
            parse_reference('data.zones.all[0].names')

    @pytest.mark.parametrize('text', ['network', 'network.', '1net.main', 'subnet.public[x].id'])
    def test_invalid(self, text):
        with pytest.raises(ConfigError):
            parse_reference(text)


class TestParseValue:
    """Tests for document value parsing."""

    def test_scalar_is_literal(self):
        assert parse_value('10.0.0.0/16') == Literal('10.0.0.0/16')
        assert parse_value(3) == Literal(3)

    def test_plain_list_and_map_collapse(self):
        assert parse_value([80, 443]) == Literal([80, 443])
        assert parse_value({'Name': 'web'}) == Literal({'Name': 'web'})

    def test_ref(self):
        assert isinstance(parse_value({'ref': 'network.main.id'}), Reference)

    def test_function_call(self):
        value = parse_value({'fn': 'element', 'args': [{'ref': 'data.zones.all.names'}, {'ref': 'count.index'}]})
        assert isinstance(value, Computed)
        assert value.function == 'element'
        assert value.args[1] == CountIndex()

    def test_list_with_reference(self):
        value = parse_value(['sg-static', {'ref': 'security-policy.web.id'}])
        assert isinstance(value, ListValue)
        assert value.items[0] == Literal('sg-static')

    def test_map_with_reference(self):
        value = parse_value({'Name': 'web', 'Network': {'ref': 'network.main.id'}})
        assert isinstance(value, MapValue)
        assert isinstance(value.entries['Network'], Reference)

    def test_function_with_unexpected_keys(self):
        with pytest.raises(ConfigError, match='Unexpected keys'):
            parse_value({'fn': 'join', 'args': [], 'extra': 1})

    def test_function_args_must_be_list(self):
        with pytest.raises(ConfigError, match='must be a list'):
            parse_value({'fn': 'join', 'args': 'x'})

    def test_ref_must_be_string(self):
        with pytest.raises(ConfigError, match='must be a string'):
            parse_value({'ref': 5})


class TestLifecycle:
    """Tests for Lifecycle parsing."""

    def test_defaults(self):
        lifecycle = Lifecycle.from_dict(None)
        assert lifecycle.replace_before_destroy is False
        assert lifecycle.prevent_destroy is False
        assert lifecycle.ignore_changes == []

    def test_policy(self):
        assert Lifecycle.from_dict({'policy': 'replace-before-destroy'}).replace_before_destroy

    def test_create_before_destroy_alias(self):
        assert Lifecycle.from_dict({'create_before_destroy': True}).replace_before_destroy

    def test_unknown_policy(self):
        with pytest.raises(ConfigError, match='Unknown lifecycle policy'):
            Lifecycle.from_dict({'policy': 'sometimes'})


class TestResourceDeclaration:
    """Tests for ResourceDeclaration."""

    def test_singleton(self):
        decl = ResourceDeclaration.from_dict({'type': 'network', 'name': 'main'})
        assert decl.address == 'network.main'
        assert decl.is_counted is False
        assert decl.instance_count == 1

    def test_counted(self):
        decl = ResourceDeclaration.from_dict({'type': 'subnet', 'name': 'public', 'count': 0})
        assert decl.is_counted is True
        assert decl.instance_count == 0

    @pytest.mark.parametrize('count', [-1, 'two', True, 1.5])
    def test_invalid_count(self, count):
        with pytest.raises(ConfigError, match='count must be an integer'):
            ResourceDeclaration.from_dict({'type': 'subnet', 'name': 'public', 'count': count})

    def test_depends_on_must_be_list(self):
        with pytest.raises(ConfigError, match='depends_on must be a list'):
            ResourceDeclaration.from_dict({'type': 'a', 'name': 'b', 'depends_on': 'network.main'})


class TestDeclarationSet:
    """Tests for DeclarationSet parsing."""

    def test_from_dict(self, web_doc):
        decls = DeclarationSet.from_dict(web_doc)
        assert decls.name == 'web'
        assert [d.address for d in decls.resources] == [
            'network.main', 'subnet.public', 'load-balancer.web',
        ]
        assert decls.get('subnet.public').count == 2
        assert decls.get('subnet.missing') is None
        assert decls.outputs[0].name == 'lb_address'

    def test_missing_name(self):
        with pytest.raises(ConfigError, match='name'):
            DeclarationSet.from_dict({'resources': []})

    def test_resource_missing_type(self):
        with pytest.raises(ConfigError, match='missing required field: type'):
            DeclarationSet.from_dict({'name': 'x', 'resources': [{'name': 'a'}]})

    def test_data_sources(self):
        decls = DeclarationSet.from_dict({
            'name': 'x',
            'data': [{'type': 'availability-zones', 'name': 'all'}],
        })
        assert decls.data_sources[0].address == 'data.availability-zones.all'

    def test_sensitive_output(self):
        output = Output.from_raw('password', {'value': {'ref': 'db-instance.main.password'}, 'sensitive': True})
        assert output.sensitive is True
        assert isinstance(output.value, Reference)

    def test_from_json(self, web_doc):
        decls = DeclarationSet.from_json(json.dumps(web_doc))
        assert len(decls.resources) == 3

    def test_from_json_invalid(self):
        with pytest.raises(ConfigError, match='Invalid declarations JSON'):
            DeclarationSet.from_json('{not json')


class TestLoading:
    """Tests for DeclarationLoader and load_declarations."""

    def test_load_yaml_file(self, tmp_path):
        path = tmp_path / 'web.yaml'
        path.write_text("""
name: web
resources:
  - type: network
    name: main
    attributes:
      cidr_block: 10.0.0.0/16
""")
        decls = DeclarationLoader().load_file(path)
        assert decls.source_path == path
        assert decls.resources[0].attributes['cidr_block'] == Literal('10.0.0.0/16')

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError, match='not found'):
            load_declarations(file_path=str(tmp_path / 'nope.yaml'))

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / 'bad.yaml'
        path.write_text("name: [unclosed")
        with pytest.raises(ConfigError, match='Invalid YAML'):
            load_declarations(file_path=str(path))

    def test_non_mapping(self, tmp_path):
        path = tmp_path / 'list.yaml'
        path.write_text("- a\n- b\n")
        with pytest.raises(ConfigError, match='must be a YAML object'):
            load_declarations(file_path=str(path))

    def test_no_source(self):
        with pytest.raises(ConfigError, match='No declarations given'):
            load_declarations()
