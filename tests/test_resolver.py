"""Tests for engine.resolver module."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from declaration import DeclarationSet, Literal
from engine.errors import ConfigurationError, IndexOutOfRangeError, UnresolvedReferenceError
from engine.resolver import BoundDataReference, BoundReference, InstanceKey, resolve


def _resolve(resources, **extra):
    return resolve(DeclarationSet.from_dict({'name': 'test', 'resources': resources, **extra}))


class TestInstanceKey:
    """Tests for InstanceKey."""

    def test_str(self):
        assert str(InstanceKey('network.main')) == 'network.main'
        assert str(InstanceKey('subnet.public', 0)) == 'subnet.public[0]'

    def test_parse(self):
        assert InstanceKey.parse('subnet.public[12]') == InstanceKey('subnet.public', 12)
        assert InstanceKey.parse('load-balancer.web') == InstanceKey('load-balancer.web')

    def test_type_and_name(self):
        key = InstanceKey('load-balancer.web')
        assert key.type == 'load-balancer'
        assert key.name == 'web'

    def test_sort_key_orders_indices_numerically(self):
        keys = [InstanceKey('subnet.public', 10), InstanceKey('subnet.public', 2), InstanceKey('network.main')]
        ordered = sorted(keys, key=InstanceKey.sort_key)
        assert [str(k) for k in ordered] == ['network.main', 'subnet.public[2]', 'subnet.public[10]']


class TestCountExpansion:
    """Tests for count expansion and count.index substitution."""

    def test_count_produces_n_instances(self, web_declarations):
        resolved = resolve(web_declarations)
        keys = [str(i.key) for i in resolved.instances]
        assert keys == ['network.main', 'subnet.public[0]', 'subnet.public[1]', 'load-balancer.web']

    def test_count_zero_produces_no_instances(self):
        resolved = _resolve([{'type': 'subnet', 'name': 'public', 'count': 0}])
        assert resolved.instances == []

    def test_count_index_substituted(self):
        resolved = _resolve([{
            'type': 'subnet', 'name': 'public', 'count': 3,
            'attributes': {'position': {'ref': 'count.index'}},
        }])
        assert [i.attributes['position'] for i in resolved.instances] == [Literal(0), Literal(1), Literal(2)]

    def test_count_index_without_count(self):
        with pytest.raises(ConfigurationError, match='count.index'):
            _resolve([{'type': 'network', 'name': 'main', 'attributes': {'n': {'ref': 'count.index'}}}])

    def test_index_to_index_binding(self):
        resolved = _resolve([
            {'type': 'subnet', 'name': 'public', 'count': 2},
            {'type': 'route-table-association', 'name': 'public', 'count': 2,
             'attributes': {'subnet_id': {'ref': 'subnet.public[count.index].id'}}},
        ])
        for i in range(2):
            assoc = resolved.get(InstanceKey('route-table-association.public', i))
            ref = assoc.attributes['subnet_id']
            assert ref.targets == (InstanceKey('subnet.public', i),)
            assert ref.collection is False
            assert assoc.dependencies == {InstanceKey('subnet.public', i)}

    def test_count_index_offset(self):
        resolved = _resolve([
            {'type': 'subnet', 'name': 'all', 'count': 4},
            {'type': 'route-table-association', 'name': 'private', 'count': 2,
             'attributes': {'subnet_id': {'ref': 'subnet.all[count.index + 2].id'}}},
        ])
        assoc = resolved.get(InstanceKey('route-table-association.private', 1))
        assert assoc.attributes['subnet_id'].targets == (InstanceKey('subnet.all', 3),)


class TestReferenceBinding:
    """Tests for reference binding rules."""

    def test_splat_binds_collection(self, web_declarations):
        resolved = resolve(web_declarations)
        lb = resolved.get(InstanceKey('load-balancer.web'))
        ref = lb.attributes['subnets']
        assert isinstance(ref, BoundReference)
        assert ref.collection is True
        assert ref.targets == (InstanceKey('subnet.public', 0), InstanceKey('subnet.public', 1))
        assert lb.dependencies == {InstanceKey('subnet.public', 0), InstanceKey('subnet.public', 1)}

    def test_splat_over_empty_count(self):
        resolved = _resolve([
            {'type': 'subnet', 'name': 'public', 'count': 0},
            {'type': 'load-balancer', 'name': 'web',
             'attributes': {'subnets': {'ref': 'subnet.public[*].id'}}},
        ])
        ref = resolved.get(InstanceKey('load-balancer.web')).attributes['subnets']
        assert ref.targets == ()
        assert ref.collection is True

    def test_unindexed_counted_target_is_collection(self):
        resolved = _resolve([
            {'type': 'subnet', 'name': 'public', 'count': 2},
            {'type': 'load-balancer', 'name': 'web', 'attributes': {'subnets': {'ref': 'subnet.public.id'}}},
        ])
        ref = resolved.get(InstanceKey('load-balancer.web')).attributes['subnets']
        assert ref.collection is True

    def test_unindexed_count_one_is_single(self):
        resolved = _resolve([
            {'type': 'subnet', 'name': 'public', 'count': 1},
            {'type': 'load-balancer', 'name': 'web', 'attributes': {'subnet': {'ref': 'subnet.public.id'}}},
        ])
        ref = resolved.get(InstanceKey('load-balancer.web')).attributes['subnet']
        assert ref.collection is False
        assert ref.targets == (InstanceKey('subnet.public', 0),)

    def test_singleton_target(self, web_declarations):
        resolved = resolve(web_declarations)
        subnet = resolved.get(InstanceKey('subnet.public', 1))
        assert subnet.attributes['network_id'].targets == (InstanceKey('network.main'),)
        assert subnet.dependencies == {InstanceKey('network.main')}

    def test_references_inside_function_args(self, web_declarations):
        resolved = resolve(web_declarations)
        cidr = resolved.get(InstanceKey('subnet.public', 1)).attributes['cidr_block']
        assert cidr.args[1] == Literal(8)
        assert cidr.args[2] == Literal(1)
        assert isinstance(cidr.args[0], BoundReference)

    def test_unknown_target(self):
        with pytest.raises(UnresolvedReferenceError) as exc_info:
            _resolve([{'type': 'subnet', 'name': 'a', 'attributes': {'vpc': {'ref': 'network.missing.id'}}}])
        assert exc_info.value.target == 'network.missing'

    def test_index_out_of_range(self):
        with pytest.raises(IndexOutOfRangeError) as exc_info:
            _resolve([
                {'type': 'subnet', 'name': 'public', 'count': 2},
                {'type': 'instance', 'name': 'web', 'attributes': {'subnet': {'ref': 'subnet.public[2].id'}}},
            ])
        assert exc_info.value.index == 2
        assert exc_info.value.count == 2

    def test_index_on_singleton_out_of_range(self):
        with pytest.raises(IndexOutOfRangeError):
            _resolve([
                {'type': 'network', 'name': 'main'},
                {'type': 'subnet', 'name': 'a', 'attributes': {'vpc': {'ref': 'network.main[1].id'}}},
            ])

    def test_offset_index_out_of_range(self):
        with pytest.raises(IndexOutOfRangeError):
            _resolve([
                {'type': 'subnet', 'name': 'all', 'count': 3},
                {'type': 'route', 'name': 'r', 'count': 2,
                 'attributes': {'subnet': {'ref': 'subnet.all[count.index + 2].id'}}},
            ])

    def test_data_reference_adds_no_dependency(self):
        resolved = _resolve(
            [{'type': 'subnet', 'name': 'public', 'count': 2,
              'attributes': {'zone': {'fn': 'element', 'args': [
                  {'ref': 'data.availability-zones.all.names'}, {'ref': 'count.index'}]}}}],
            data=[{'type': 'availability-zones', 'name': 'all'}],
        )
        subnet = resolved.get(InstanceKey('subnet.public', 0))
        assert isinstance(subnet.attributes['zone'].args[0], BoundDataReference)
        assert subnet.dependencies == set()

    def test_unknown_data_source(self):
        with pytest.raises(UnresolvedReferenceError):
            _resolve([{'type': 'subnet', 'name': 'a', 'attributes': {'z': {'ref': 'data.zones.all.names'}}}])

    def test_same_local_name_across_types(self):
        resolved = _resolve([
            {'type': 'subnet', 'name': 'public'},
            {'type': 'route-table', 'name': 'public'},
        ])
        assert {str(i.key) for i in resolved.instances} == {'subnet.public', 'route-table.public'}

    def test_duplicate_address(self):
        with pytest.raises(ConfigurationError, match='Duplicate resource address'):
            _resolve([{'type': 'subnet', 'name': 'a'}, {'type': 'subnet', 'name': 'a'}])


class TestDependsOn:
    """Tests for explicit ordering dependencies."""

    def test_depends_on_adds_all_instances(self):
        resolved = _resolve([
            {'type': 'subnet', 'name': 'public', 'count': 2},
            {'type': 'instance', 'name': 'web', 'depends_on': ['subnet.public']},
        ])
        web = resolved.get(InstanceKey('instance.web'))
        assert web.dependencies == {InstanceKey('subnet.public', 0), InstanceKey('subnet.public', 1)}

    def test_unknown_depends_on(self):
        with pytest.raises(UnresolvedReferenceError):
            _resolve([{'type': 'instance', 'name': 'web', 'depends_on': ['gateway.main']}])


class TestOutputs:
    """Tests for output resolution."""

    def test_output_bound(self, web_declarations):
        resolved = resolve(web_declarations)
        ref = resolved.outputs['lb_address']
        assert ref.targets == (InstanceKey('load-balancer.web'),)
        assert ref.path == ('dns_name',)

    def test_output_cannot_use_count_index(self):
        with pytest.raises(ConfigurationError):
            _resolve([{'type': 'subnet', 'name': 'a', 'count': 1}],
                     outputs={'x': {'ref': 'subnet.a[count.index].id'}})
