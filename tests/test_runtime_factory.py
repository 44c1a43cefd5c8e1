import itertools

import pytest

from errors import BackendUnavailableError, ValidationError, RuntimeBackendError
from runtime_factory import (
    HostInfo, RuntimeFactory, resolve_preferred_runtime, sense_host, parse_runtime_type
)
from runtime_types import RuntimeType

from conftest import FakeRuntime, make_factory

DOCKER = RuntimeType.DOCKER
CONTAINERD = RuntimeType.CONTAINERD
LXC = RuntimeType.LXC


def host(**overrides):
    values = {'os': 'linux', 'architecture': 'amd64', 'distribution': 'arch'}
    values.update(overrides)
    return HostInfo(**values)


@pytest.mark.parametrize('host_info, available, expected', [
    # Raspberry Pi stops at its own rule
    (host(is_raspberry_pi=True, architecture='arm64'), {CONTAINERD, DOCKER}, CONTAINERD),
    (host(is_raspberry_pi=True, architecture='arm64'), {DOCKER}, DOCKER),
    (host(is_raspberry_pi=True), {LXC}, CONTAINERD),
    (host(is_raspberry_pi=True), set(), CONTAINERD),
    # nested container
    (host(is_nested_container=True), {CONTAINERD, DOCKER}, CONTAINERD),
    (host(is_nested_container=True), {DOCKER}, DOCKER),
    # macOS
    (host(os='darwin'), {DOCKER, CONTAINERD}, DOCKER),
    (host(os='darwin'), {CONTAINERD}, CONTAINERD),
    # ARM
    (host(architecture='arm64'), {CONTAINERD, DOCKER}, CONTAINERD),
    (host(architecture='arm'), {DOCKER}, DOCKER),
    # distributions
    (host(distribution='ubuntu'), {CONTAINERD, DOCKER}, CONTAINERD),
    (host(distribution='fedora'), {DOCKER, LXC}, DOCKER),
    # general fallback
    (host(), {DOCKER, LXC}, DOCKER),
    (host(), {LXC}, LXC),
    (host(), set(), DOCKER),
])
def test_preference_policy(host_info, available, expected):
    assert resolve_preferred_runtime(host_info, frozenset(available)) == expected


def test_raspberry_pi_without_containerd_prefers_docker():
    pi = host(is_raspberry_pi=True, architecture='arm64', distribution='debian')
    assert resolve_preferred_runtime(pi, {DOCKER}) == DOCKER


def test_policy_is_pure_over_all_combinations():
    runtimes = [DOCKER, CONTAINERD, LXC]
    subsets = [frozenset(c) for n in range(4) for c in itertools.combinations(runtimes, n)]
    for os_name, arch, nested, pi, available in itertools.product(
            ['linux', 'darwin'], ['amd64', 'arm64'], [False, True], [False, True], subsets):
        info = host(os=os_name, architecture=arch, is_nested_container=nested, is_raspberry_pi=pi)
        first = resolve_preferred_runtime(info, available)
        assert all(resolve_preferred_runtime(info, set(available)) == first for _ in range(3))
        assert first in available or not ({DOCKER, CONTAINERD} & available) or pi


def test_sense_host_reads_markers(tmp_path):
    (tmp_path / 'etc').mkdir()
    (tmp_path / 'etc' / 'os-release').write_text('NAME="Debian"\nID=debian\n')
    (tmp_path / 'proc' / '1').mkdir(parents=True)
    (tmp_path / 'proc' / 'cpuinfo').write_text('Hardware\t: BCM2835\nModel\t: Raspberry Pi 4\n')
    (tmp_path / 'proc' / '1' / 'cgroup').write_text('0::/docker/abc\n')
    (tmp_path / 'sys' / 'class' / 'dmi' / 'id').mkdir(parents=True)
    (tmp_path / 'sys' / 'class' / 'dmi' / 'id' / 'product_name').write_text('KVM\n')

    info = sense_host(str(tmp_path), system='Linux', machine='aarch64')

    assert info.os == 'linux'
    assert info.architecture == 'arm64'
    assert info.distribution == 'debian'
    assert info.is_raspberry_pi is True
    assert info.is_nested_container is True
    assert info.virtualization == 'kvm'


def test_sense_host_plain_machine(tmp_path):
    info = sense_host(str(tmp_path), system='Linux', machine='x86_64')
    assert info == HostInfo(os='linux', architecture='amd64')


def test_dockerenv_marks_nested(tmp_path):
    (tmp_path / '.dockerenv').write_text('')
    assert sense_host(str(tmp_path), system='Linux', machine='x86_64').is_nested_container


def test_parse_runtime_type():
    assert parse_runtime_type('Docker') == DOCKER
    assert parse_runtime_type(LXC) == LXC
    with pytest.raises(ValidationError):
        parse_runtime_type('podman')


def test_factory_reports_available_and_preferred():
    factory = make_factory({DOCKER: FakeRuntime(), LXC: FakeRuntime(LXC)})
    status = factory.status()
    assert status['available'] == ['docker', 'lxc']
    assert status['preferred'] == 'docker'
    assert factory.is_available('lxc')
    assert not factory.is_available(CONTAINERD)


def test_create_runtime_rejects_unavailable_backend():
    factory = make_factory({DOCKER: FakeRuntime()})
    with pytest.raises(BackendUnavailableError) as exc:
        factory.create_runtime(LXC)
    assert exc.value.backend == 'lxc'


def test_nothing_available_keeps_docker_placeholder():
    factory = make_factory({})
    assert factory.preferred == DOCKER
    with pytest.raises(BackendUnavailableError):
        factory.create_runtime()


def test_manual_override_is_validated():
    factory = make_factory({DOCKER: FakeRuntime(), LXC: FakeRuntime(LXC)})
    factory.set_preferred('lxc')
    assert factory.preferred == LXC
    assert factory.create_runtime().runtime_type == LXC

    with pytest.raises(BackendUnavailableError):
        factory.set_preferred('containerd')
    assert factory.preferred == LXC

    factory.clear_override()
    assert factory.preferred == DOCKER


def test_refresh_drops_stale_override():
    state = {'lxc': True}
    factory = RuntimeFactory(
        probes={DOCKER: lambda: True, CONTAINERD: lambda: False, LXC: lambda: state['lxc']},
        builders={DOCKER: FakeRuntime, LXC: lambda: FakeRuntime(LXC)},
        sensor=lambda: host()
    )
    factory.set_preferred(LXC)
    state['lxc'] = False
    factory.refresh()
    assert factory.preferred == DOCKER
    assert factory.status()['override'] is None


def test_probe_errors_count_as_unavailable():
    def broken():
        raise OSError('socket exploded')

    factory = RuntimeFactory(
        probes={DOCKER: broken, CONTAINERD: lambda: False, LXC: lambda: True},
        builders={LXC: lambda: FakeRuntime(LXC)},
        sensor=lambda: host()
    )
    assert factory.available_runtimes() == [LXC]
    assert factory.preferred == LXC


def test_capabilities_instantiate_and_release_each_backend():
    docker_rt = FakeRuntime()
    lxc_rt = FakeRuntime(LXC, capabilities=('run',))
    factory = make_factory({DOCKER: docker_rt, LXC: lxc_rt})

    capabilities = factory.get_capabilities()

    assert capabilities['docker']['capabilities'] == ['build', 'run', 'logs', 'exec']
    assert capabilities['lxc']['capabilities'] == ['run']
    assert docker_rt.close_count == 1
    assert lxc_rt.close_count == 1


def test_capabilities_report_backend_errors():
    class Broken(FakeRuntime):
        def get_runtime_info(self):
            raise RuntimeBackendError(DOCKER, 'daemon gone')

    broken = Broken()
    factory = make_factory({DOCKER: broken})
    capabilities = factory.get_capabilities()
    assert capabilities['docker']['available'] is False
    assert 'daemon gone' in capabilities['docker']['error']
    assert broken.close_count == 1
