import pytest

from kubeinstall.modules.errors import TemplateNotFoundError, TemplateRenderError
from kubeinstall.modules.scripts import (
    STEPS, ScriptTemplateStore, distro_family, parse_version, repository_url,
)
from kubeinstall.modules.store import MemoryStore


@pytest.fixture
def scripts():
    store = ScriptTemplateStore(MemoryStore())
    store.load()
    return store


def test_every_distro_has_every_step(scripts):
    for distro in ("ubuntu", "debian", "centos", "rocky"):
        for step in STEPS:
            assert f"{distro}_{step}" in scripts.keys()


def test_deb_render_uses_apt_repository(scripts):
    script = scripts.render("Ubuntu 22.04", "k8s_components", version="v1.29.3")
    assert "https://pkgs.k8s.io/core:/stable:/v1.29/deb/" in script
    assert "/etc/apt/sources.list.d/kubernetes.list" in script
    assert "kubeadm='1.29.3-*'" in script
    assert "{{" not in script


def test_rpm_render_uses_yum_repository(scripts):
    script = scripts.render("rocky", "k8s_components", version="1.28.2")
    assert "/etc/yum.repos.d/kubernetes.repo" in script
    assert "baseurl=https://pkgs.k8s.io/core:/stable:/v1.28/rpm/" in script
    assert "kubeadm-1.28.2" in script


def test_mirror_uses_plain_path():
    url = repository_url("https://mirrors.aliyun.com/kubernetes-new/", "core", "v1.30", "deb")
    assert url == "https://mirrors.aliyun.com/kubernetes-new/core/stable/v1.30/deb/"


def test_render_is_deterministic(scripts):
    first = scripts.render("debian", "crio_install", version="v1.30.0", repo_url="https://mirror.example.com")
    second = scripts.render("debian", "crio_install", version="v1.30.0", repo_url="https://mirror.example.com")
    assert first == second
    assert "https://mirror.example.com/addons/cri-o/stable/v1.30/deb/" in first


def test_unknown_distro_or_step(scripts):
    with pytest.raises(TemplateNotFoundError) as exc:
        scripts.render("gentoo", "system_prep")
    assert exc.value.distro == "gentoo"
    with pytest.raises(TemplateNotFoundError):
        scripts.render("ubuntu", "install_docker")


def test_undefined_placeholder_fails_render(scripts):
    scripts.update({"ubuntu_custom": "echo {{ missing_value }}"})
    with pytest.raises(TemplateRenderError):
        scripts.render("ubuntu", "custom")
    assert scripts.render("ubuntu", "custom", missing_value="hi") == "echo hi"


def test_invalid_version(scripts):
    with pytest.raises(TemplateRenderError):
        scripts.render("ubuntu", "k8s_components", version="latest")


def test_update_persists_and_reload(scripts):
    scripts.update({"ubuntu_system_prep": "echo custom"})
    reloaded = ScriptTemplateStore(scripts.store)
    reloaded.load()
    assert reloaded.get("ubuntu_system_prep") == "echo custom"
    assert reloaded.get("rocky_system_prep") == scripts.defaults()["rocky_system_prep"]


def test_update_rejects_bad_keys(scripts):
    with pytest.raises(ValueError):
        scripts.update({"nodistro": "echo"})


def test_reset_single_and_all(scripts):
    scripts.update({"ubuntu_system_prep": "echo a", "rocky_system_prep": "echo b"})
    scripts.reset(["ubuntu_system_prep"])
    assert scripts.get("ubuntu_system_prep") == scripts.defaults()["ubuntu_system_prep"]
    assert scripts.get("rocky_system_prep") == "echo b"
    scripts.reset()
    assert scripts.all() == scripts.defaults()


def test_parse_version_and_family():
    assert parse_version("v1.30") == {"version": "v1.30.0", "package_version": "1.30.0", "minor": "v1.30"}
    assert distro_family("almalinux") == "rpm"
    assert distro_family("ubuntu") == "deb"


def test_custom_distro_template_renders(scripts):
    scripts.update({"arch_system_prep": "pacman -Syu --noconfirm kubeadm # {{ version }}"})
    assert scripts.render("arch", "system_prep", version="v1.30.1") == "pacman -Syu --noconfirm kubeadm # v1.30.1"


def test_custom_distro_cannot_use_repository_block(scripts):
    scripts.update({"arch_k8s_components": "{{ repo_block }}"})
    with pytest.raises(TemplateRenderError):
        scripts.render("arch", "k8s_components")
