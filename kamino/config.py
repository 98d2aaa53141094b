"""Kamino configuration."""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Kamino settings loaded from environment variables."""

    # vCenter connection
    vcenter_host: str = "localhost"
    vcenter_port: int = 443
    vcenter_username: str = ""
    vcenter_password: str = ""
    vcenter_verify_ssl: bool = False

    # Inventory locations
    datacenter: str = "Datacenter"
    datastore: str = "datastore1"
    distributed_switch: str = "Main-DSwitch"
    template_resource_pool: str = "Templates"  # parent of preset templates
    template_folder: str = "Templates"  # folder of custom template groups
    destination_folder: str = "Pods"
    target_resource_pool: str = "Pods"
    competition_resource_pool: str = "Competition"
    default_wan_port_group: str = "WAN"
    competition_wan_port_group: str = "Competition-WAN"

    # Port group ranges (end is exclusive)
    starting_port_group: int = 1000
    ending_port_group: int = 1255
    competition_start_port_group: int = 2000
    competition_end_port_group: int = 2255
    port_group_suffix: str = "KaminoNetwork"

    # Network ids used for the router NAT program (only first two octets used)
    default_network_id: str = "172.16.0.0"
    competition_network_id: str = "172.20.0.0"

    # Router
    router_path: str = "PodRouter"
    natted_router_path: str = "NattedPodRouter"
    router_program: str = "/bin/bash"
    router_program_args: str = "/root/nat.sh {octet} {network}"  # {octet}, {network}
    router_username: str = ""
    router_password: str = ""

    # Permissions
    domain: str = "KAMINO"
    clone_role: str = "Kamino Clone"
    custom_clone_role: str = "Kamino Custom Clone"
    no_access_role: str = "NoAccess"

    # Limits
    max_pod_limit: int = 5
    max_custom_vms: int = 10
    max_concurrent_tasks: int = 16

    # Background resync of taken port groups (seconds)
    resync_interval: float = 30.0

    # Guest program readiness
    guest_ready_timeout: float = 120.0
    guest_poll_interval: float = 2.0
    guest_auth_retries: int = 2
    guest_auth_backoff: float = 20.0

    # HTTP surface
    api_host: str = "0.0.0.0"
    api_port: int = 8080
    api_secret: str = ""  # Empty disables bearer auth

    # Logging
    log_level: str = "INFO"
    log_format: str = "text"  # "text" or "json"

    class Config:
        env_prefix = "KAMINO_"


settings = Settings()
