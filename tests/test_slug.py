import pytest

from popsync.slug import slugify


@pytest.mark.parametrize('text, expected', [
    ('Bare Metal Provisioning', 'bare-metal-provisioning'),
    ('  API / Gateway v2 ', 'api-gateway-v2'),
    ('Café Ops', 'caf-ops'),
    ('multi\t\nline  text', 'multi-line-text'),
    ('--already-slugged--', 'already-slugged'),
    ('Q1: Observability (phase 2)', 'q1-observability-phase-2'),
])
def test_slugify(text, expected):
    assert slugify(text) == expected


@pytest.mark.parametrize('text', ['', None, '@#$%', '   ', '///'])
def test_slugify_empty(text):
    assert slugify(text) == ''


def test_slugify_is_deterministic():
    text = 'Network Fabric -- Core & Edge'
    assert slugify(text) == slugify(text) == 'network-fabric-core-edge'


def test_slugify_output_alphabet():
    slug = slugify('Ünïcode & Symbols * Everywhere 123')
    assert set(slug) <= set('abcdefghijklmnopqrstuvwxyz0123456789-')
    assert not slug.startswith('-') and not slug.endswith('-')
    assert '--' not in slug
