"""
Variable constants for rosetta-builder

The host and guest halves must agree on these names. Changing one of the file names or the mount
order without rebuilding the guest image leaves the guest unable to install its keys.
"""

NAME = "rosetta-builder"
VM_NAME = f"{NAME}-vm"
DAEMON_NAME = f"{NAME}d"
DAEMON_SOCKET_NAME = "Listener"

WORKING_DIRECTORY = f"/var/lib/{NAME}"
LIMA_HOME_DIR_NAME = ".lima"
STATE_FILE_NAME = "state.json"
VM_DEFINITION_FILE_NAME = f"{NAME}.yaml"
PID_FILE_NAME = "limactl.pid"

# Host service account
DARWIN_GID = 349
DARWIN_UID = DARWIN_GID
DARWIN_GROUP = NAME.replace("-", "")
DARWIN_USER = f"_{DARWIN_GROUP}"

# VM configuration
LINUX_HOST_NAME = NAME
LINUX_USER = "builder"
LINUX_SYSTEM = "aarch64-linux"

# SSH
SSH_KEY_TYPE = "ed25519"
SSH_HOST = NAME
SSH_HOST_KEY_ALIAS = f"{SSH_HOST}-key"
SSH_HOST_PRIVATE_KEY_FILE_NAME = "ssh_host_ed25519_key"
SSH_USER_PRIVATE_KEY_FILE_NAME = "ssh_user_ed25519_key"
SSH_USER_PUBLIC_KEY_FILE_NAME = "ssh_user_ed25519_key.pub"
SSH_KNOWN_HOSTS_FILE_NAME = "ssh_known_hosts"
SSHD_KEYS_SHARED_DIR_NAME = "linux-sshd-keys"

# Position of the keys directory in the VM definition's mount list. Lima labels virtiofs shares by
# index, so the guest finds the channel as "mount<index>".
SSHD_KEYS_MOUNT_INDEX = 0

# Guest paths
GUEST_SSH_DIR_PATH = "/etc/ssh"
GUEST_SSH_HOST_PRIVATE_KEY_FILE_PATH = f"{GUEST_SSH_DIR_PATH}/{SSH_HOST_PRIVATE_KEY_FILE_NAME}"
GUEST_AUTHORIZED_KEYS_FILE_PATH = f"{GUEST_SSH_DIR_PATH}/authorized_keys.d/{LINUX_USER}"
GUEST_SSHD_KEYS_MOUNT_PATH = "/var/sshd-keys"
GUEST_SSHD_SERVICE = "sshd.service"

# Defaults
DEFAULT_CORES = 8
DEFAULT_MEMORY = "6GiB"
DEFAULT_DISK_SIZE = "100GiB"
DEFAULT_PORT = 31122
DEFAULT_ON_DEMAND_LINGER_MINUTES = 180
DEFAULT_COLD_START_TIMEOUT = 120
DEFAULT_SSH_READY_TIMEOUT = 60
DEFAULT_VM_STOP_TIMEOUT = 30
DEFAULT_RESTART_DELAY = 5

BUILD_MACHINE_FEATURES = ["benchmark", "big-parallel", "kvm", "nixos-test"]

# Environment
CONFIG_FILE_ENV = "ROSETTA_BUILDER_CONFIG_FILE"
WORKING_DIRECTORY_ENV = "ROSETTA_BUILDER_WORKING_DIRECTORY"
# launchd and systemd start services with a minimal PATH; limactl, ssh-keygen and mount must resolve
HOST_SEARCH_PATH = "/opt/homebrew/bin:/usr/local/bin:/usr/bin:/bin:/usr/sbin:/sbin"
GUEST_SEARCH_PATH = "/run/wrappers/bin:/run/current-system/sw/bin:/usr/bin:/bin:/usr/sbin:/sbin"
