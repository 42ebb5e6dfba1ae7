"""Shared pytest fixtures for provisioning engine tests."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from config import EngineConfig
from declaration import DeclarationSet
from engine.state import FileStateStore
from providers.memory import InMemoryProvider


def web_document(subnet_count=2):
    """Network, counted public subnets, and a load balancer over all of them."""
    return {
        'name': 'web',
        'resources': [
            {
                'type': 'network',
                'name': 'main',
                'attributes': {'cidr_block': '10.0.0.0/16'},
            },
            {
                'type': 'subnet',
                'name': 'public',
                'count': subnet_count,
                'attributes': {
                    'network_id': {'ref': 'network.main.id'},
                    'cidr_block': {
                        'fn': 'cidrsubnet',
                        'args': [{'ref': 'network.main.cidr_block'}, 8, {'ref': 'count.index'}],
                    },
                },
            },
            {
                'type': 'load-balancer',
                'name': 'web',
                'attributes': {
                    'name': 'web-lb',
                    'subnets': {'ref': 'subnet.public[*].id'},
                },
            },
        ],
        'outputs': {
            'lb_address': {'ref': 'load-balancer.web.dns_name'},
        },
    }


@pytest.fixture
def web_doc():
    """Raw declaration document for the web scenario (safe to mutate)."""
    return web_document()


@pytest.fixture
def web_declarations():
    """DeclarationSet for the network + 2 subnets + load balancer scenario."""
    return DeclarationSet.from_dict(web_document())


@pytest.fixture
def store(tmp_path):
    """Empty state store in a temporary directory."""
    return FileStateStore(tmp_path / 'state')


@pytest.fixture
def provider():
    """Simulated provider with default schemas."""
    return InMemoryProvider()


@pytest.fixture
def engine_config(tmp_path):
    """Engine settings with fast polling and no backoff delays."""
    return EngineConfig(
        concurrency=4,
        max_attempts=3,
        backoff_base=0.0,
        backoff_max=0.0,
        poll_interval=0.01,
        state_dir=tmp_path / 'state',
    )
