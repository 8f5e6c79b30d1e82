"""Remote access to controllers over SSH."""
import logging
from typing import Optional

import paramiko

from hcibootstrap.config import SSHConfig

logger = logging.getLogger("hcibootstrap.ssh")

ADMIN_CONF_COMMAND = "sudo cat /etc/kubernetes/admin.conf"


def ssh_connect(host: str, ssh_config: SSHConfig) -> paramiko.SSHClient:
    """Open an SSH session to a node.

    Args:
        host: Address of the node
        ssh_config: User, key and timeouts

    Returns:
        A connected client; the caller closes it
    """
    ssh = paramiko.SSHClient()
    ssh.set_missing_host_key_policy(paramiko.AutoAddPolicy())
    ssh.connect(
        host,
        port=ssh_config.port,
        username=ssh_config.user,
        key_filename=ssh_config.key_path,
        timeout=ssh_config.connect_timeout,
        look_for_keys=ssh_config.key_path is None,
    )
    return ssh


def ssh_exec(host: str, command: str, ssh_config: SSHConfig, timeout: Optional[int] = 30) -> str:
    """Run a command on a node and return its stdout.

    Raises:
        RuntimeError: If the command exits non-zero
        paramiko.SSHException, OSError: On connection failures
    """
    ssh = ssh_connect(host, ssh_config)
    try:
        logger.debug(f"[{host}] $ {command}")
        _, stdout, stderr = ssh.exec_command(command, timeout=timeout)
        output = stdout.read().decode()
        exit_code = stdout.channel.recv_exit_status()
        if exit_code != 0:
            raise RuntimeError(f"'{command}' on {host} exited {exit_code}: {stderr.read().decode().strip()}")
        return output
    finally:
        ssh.close()


def fetch_admin_conf(host: str, ssh_config: SSHConfig) -> str:
    """Read the cluster admin kubeconfig from a controller."""
    return ssh_exec(host, ADMIN_CONF_COMMAND, ssh_config)
