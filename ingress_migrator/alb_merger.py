"""
ALB/TCP-port merger
Run-scoped accumulation of the tcp-ports requests of all migrated resources
"""

import logging
from typing import Dict, List

from .errors import ALBPortCollisionError
from .model import ALBConfigData, ALBSpecificData, TCPPortConfig

logger = logging.getLogger(__name__)


def parse_alb_id_list(alb_id_list: str) -> List[str]:
    """Split a ';'-separated ALB id list, an empty list selects the '' (any ALB) key"""
    alb_ids = [alb_id.strip() for alb_id in (alb_id_list or '').split(';')]
    alb_ids = [alb_id for alb_id in alb_ids if alb_id]
    return alb_ids or ['']


def merge(accumulator: ALBSpecificData, request: Dict[str, TCPPortConfig], alb_id_list: str) -> ALBSpecificData:
    """
    Fold one resource's TCP port request into the accumulator.

    Identical entries are a no-op. A port already bound to a different
    service on the same ALB raises ALBPortCollisionError and leaves the
    accumulator unchanged.
    """
    if not request:
        return accumulator
    alb_ids = parse_alb_id_list(alb_id_list)

    for alb_id in alb_ids:
        existing = accumulator.get(alb_id)
        if existing is None:
            continue
        for port, port_config in request.items():
            current = existing.tcp_ports.get(port)
            if current is not None and current != port_config:
                logger.error(f"TCP port {port} of ALB '{alb_id}' is already bound to {current.target()}, "
                             f"refusing {port_config.target()}")
                raise ALBPortCollisionError(alb_id, port)

    for alb_id in alb_ids:
        alb_data = accumulator.setdefault(alb_id, ALBConfigData())
        for port, port_config in request.items():
            alb_data.tcp_ports.setdefault(port, port_config)
    return accumulator
