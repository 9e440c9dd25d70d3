#!/usr/bin/env python3
"""
Ephemeral Port Collision Reproducer

This script reproduces the self-connect bug where a reconnect loop walks the
OS ephemeral port counter up to the service's own well-known port, and the
next unbound connect to that port ends up connected to itself.

Collision Sequence:
1. Probe sockets are bound to port 0 → OS assigns the next ephemeral port
2. Probes are closed (or held) → counter keeps moving
3. Counter arrives just below the target port → allocation phase stops
4. Fresh unbound socket connects to (loopback, target) → OS assigns target
5. SYN meets itself (simultaneous open) → socket is CONNECTED TO SELF

Platforms that reject self-connect report CONNECTION_REFUSED instead.

Author: Network Team
"""

import argparse
import errno
import logging
import socket
import sys
import time
import yaml
from dataclasses import dataclass, fields
from enum import Enum
from typing import Callable, List, Optional, Tuple

try:
    import resource
except ImportError:  # Windows has no RLIMIT_NOFILE
    resource = None

logger = logging.getLogger(__name__)

# IANA dynamic/private range, used where the OS does not publish its own
IANA_EPHEMERAL_RANGE = (49152, 65535)
LINUX_PORT_RANGE_PATH = "/proc/sys/net/ipv4/ip_local_port_range"
PORT_SPACE = 65536

DISPOSAL_MODES = ("close", "hold")
# Descriptors kept free for stdio, logging and the connect socket
FD_HEADROOM = 64

EXIT_OK = 0
EXIT_BUDGET_EXHAUSTED = 1
EXIT_INVALID_ARGUMENTS = 2
EXIT_OS_ERROR = 3
EXIT_INTERRUPTED = 130


class CollisionOutcome(Enum):
    """Classification of the final connect attempt"""
    CONNECTED_TO_SELF = "ConnectedToSelf"
    CONNECTION_REFUSED = "ConnectionRefused"
    OTHER_ERROR = "OtherError"
    BUDGET_EXHAUSTED = "BudgetExhausted"


class ReproducerError(Exception):
    """Environment problem the reproducer cannot recover from"""


class SocketCreationFailed(ReproducerError):
    pass


class AddressQueryFailed(ReproducerError):
    pass


class HoldCapacityExceeded(ReproducerError):
    pass


def ephemeral_port_range() -> Tuple[int, int]:
    """Return the (low, high) ephemeral port range of this host"""
    if sys.platform.startswith("linux"):
        try:
            with open(LINUX_PORT_RANGE_PATH, "r") as f:
                low, high = (int(part) for part in f.read().split())
                return low, high
        except (OSError, ValueError) as e:
            logger.debug(f"Could not read {LINUX_PORT_RANGE_PATH}: {e}")
    return IANA_EPHEMERAL_RANGE


def default_budget() -> int:
    """Enough iterations to wrap the ephemeral counter twice"""
    low, high = ephemeral_port_range()
    return 2 * (high - low + 1)


def raise_open_file_limit(needed: int) -> Optional[int]:
    """
    Raise the soft RLIMIT_NOFILE towards needed, capped at the hard limit.
    Returns: the soft limit now in effect, or None where the platform has none
    """
    if resource is None:
        return None
    soft, hard = resource.getrlimit(resource.RLIMIT_NOFILE)
    if soft == resource.RLIM_INFINITY or soft >= needed:
        return soft
    wanted = needed if hard == resource.RLIM_INFINITY else min(needed, hard)
    if wanted <= soft:
        return soft
    try:
        resource.setrlimit(resource.RLIMIT_NOFILE, (wanted, hard))
    except (ValueError, OSError) as e:
        logger.warning(f"Could not raise open file limit from {soft} to {wanted}: {e}")
        return soft
    logger.info(f"Raised open file limit from {soft} to {wanted}")
    return wanted


def service_can_bind(host: str, port: int) -> bool:
    """Check whether a restarted service could listen on (host, port)"""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((host, port))
        sock.listen(1)
        return True
    except OSError as e:
        if e.errno == errno.EADDRINUSE:
            return False
        raise
    finally:
        sock.close()


@dataclass
class ConnectResult:
    """Raw classification of a single connect attempt"""
    outcome: CollisionOutcome
    local_address: Optional[Tuple[str, int]] = None
    remote_address: Optional[Tuple[str, int]] = None
    error_code: Optional[int] = None
    detail: str = ""


def _assigned_address(sock: socket.socket) -> Optional[Tuple[str, int]]:
    """Best-effort local address of a socket whose connect failed"""
    try:
        local = tuple(sock.getsockname()[:2])
    except OSError:
        return None
    # Some kernels release the port when the connect fails
    return local if local[1] else None


def classify_connection(sock: socket.socket, address: Tuple[str, int]) -> ConnectResult:
    """
    Connect sock to address and classify what happened.
    The caller owns sock and decides whether to close it.
    """
    try:
        sock.connect(address)
    except ConnectionRefusedError as e:
        return ConnectResult(CollisionOutcome.CONNECTION_REFUSED,
                             local_address=_assigned_address(sock),
                             remote_address=tuple(address[:2]),
                             error_code=e.errno, detail=str(e))
    except socket.timeout as e:
        return ConnectResult(CollisionOutcome.OTHER_ERROR,
                             error_code=errno.ETIMEDOUT, detail=f"connect timed out: {e}")
    except OSError as e:
        return ConnectResult(CollisionOutcome.OTHER_ERROR,
                             error_code=e.errno, detail=str(e))

    local = tuple(sock.getsockname()[:2])
    remote = tuple(sock.getpeername()[:2])
    if local == remote:
        return ConnectResult(CollisionOutcome.CONNECTED_TO_SELF, local, remote,
                             detail="simultaneous open with itself")
    return ConnectResult(CollisionOutcome.OTHER_ERROR, local, remote,
                         detail="connected to a listening peer")


@dataclass
class ReproducerConfig:
    """Configuration for a reproducer run"""
    target_port: int
    budget: Optional[int] = None
    time_budget: Optional[float] = None
    disposal: str = "close"
    host: str = "127.0.0.1"
    connect_timeout: float = 1.0
    lead: int = 1
    progress_every: int = 1000
    max_step: int = 64

    def __post_init__(self):
        if self.budget is None:
            self.budget = default_budget()
        if not 1 <= self.target_port <= 65535:
            raise ValueError(f"target port must be within 1-65535, got {self.target_port}")
        if self.budget < 1:
            raise ValueError(f"budget must be positive, got {self.budget}")
        if self.time_budget is not None and self.time_budget <= 0:
            raise ValueError(f"time budget must be positive, got {self.time_budget}")
        if self.disposal not in DISPOSAL_MODES:
            raise ValueError(f"disposal must be one of {', '.join(DISPOSAL_MODES)}, got {self.disposal!r}")
        if self.connect_timeout <= 0:
            raise ValueError(f"connect timeout must be positive, got {self.connect_timeout}")
        if self.lead < 0:
            raise ValueError(f"lead must not be negative, got {self.lead}")
        if self.progress_every < 1:
            raise ValueError(f"progress interval must be positive, got {self.progress_every}")
        if self.max_step < 1:
            raise ValueError(f"max step must be positive, got {self.max_step}")

    @classmethod
    def from_yaml(cls, filepath: str, **overrides) -> 'ReproducerConfig':
        """Load configuration from YAML file, then apply overrides"""
        data = {}
        try:
            with open(filepath, 'r') as f:
                data = yaml.safe_load(f) or {}
        except FileNotFoundError:
            logger.warning(f"Config file {filepath} not found, using defaults")
        if not isinstance(data, dict):
            raise ValueError(f"Config file {filepath} must contain a mapping")

        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ValueError(f"Unknown config keys in {filepath}: {', '.join(unknown)}")

        data.update({k: v for k, v in overrides.items() if v is not None})
        if 'target_port' not in data:
            raise ValueError("target_port is required")
        return cls(**data)


@dataclass
class ReproducerResult:
    """
    Outcome of a reproducer run plus diagnostic data.

    The port assigned to the final connect socket is local_port; with the
    default lead of 1 it is the target on a collision, while last_probe_port
    is the last port seen during the allocation phase (one below the target).
    sequential_allocation is None until at least two probes were observed.
    """
    outcome: CollisionOutcome
    target_port: int
    last_probe_port: Optional[int]
    iterations: int
    connect_attempts: int = 0
    local_address: Optional[Tuple[str, int]] = None
    remote_address: Optional[Tuple[str, int]] = None
    error_code: Optional[int] = None
    detail: str = ""
    held_ports: int = 0
    elapsed: float = 0.0
    platform: str = sys.platform
    probe_steps: int = 0
    large_steps: int = 0

    @property
    def local_port(self) -> Optional[int]:
        return self.local_address[1] if self.local_address else None

    @property
    def sequential_allocation(self) -> Optional[bool]:
        if not self.probe_steps:
            return None
        return self.large_steps * 2 <= self.probe_steps

    @property
    def self_connect_rejected(self) -> bool:
        """Refused although the connect socket really was on the target port"""
        return (self.outcome is CollisionOutcome.CONNECTION_REFUSED
                and self.local_port == self.target_port)


class PortCollisionReproducer:
    """Walks the ephemeral port counter to a target port, then connects to it"""

    def __init__(self, config: ReproducerConfig,
                 socket_factory: Callable[..., socket.socket] = socket.socket):
        self.config = config
        self.socket_factory = socket_factory
        self.held_sockets: List[socket.socket] = []
        self.probe_steps = 0
        self.large_steps = 0

    def __enter__(self) -> 'PortCollisionReproducer':
        return self

    def __exit__(self, *exc_info):
        self.close()

    def close(self):
        """Release every held socket"""
        if self.held_sockets:
            logger.info(f"Releasing {len(self.held_sockets)} held sockets")
        while self.held_sockets:
            self.held_sockets.pop().close()

    def _new_socket(self) -> socket.socket:
        try:
            return self.socket_factory(socket.AF_INET, socket.SOCK_STREAM)
        except OSError as e:
            raise SocketCreationFailed(f"Could not create socket: {e}") from e

    def allocate_probe(self) -> Tuple[socket.socket, int]:
        """Create a probe socket and return it with its OS-assigned port"""
        sock = self._new_socket()
        try:
            # Port 0 lets the OS pick; the read-back is the observed ephemeral port
            sock.bind((self.config.host, 0))
            port = sock.getsockname()[1]
        except OSError as e:
            sock.close()
            raise AddressQueryFailed(f"Could not obtain an ephemeral port: {e}") from e
        return sock, port

    def ensure_hold_capacity(self):
        """Make room for one descriptor per held probe, or fail before allocating"""
        budget = self.config.budget
        limit = raise_open_file_limit(budget + FD_HEADROOM)
        if limit is None:
            return
        capacity = max(limit - FD_HEADROOM, 0)
        if capacity < budget:
            raise HoldCapacityExceeded(
                f"Hold mode can keep at most {capacity} sockets open (open file limit {limit}), "
                f"but the budget is {budget}; lower --budget or raise the hard limit (ulimit -Hn)")

    def dispose_probe(self, sock: socket.socket):
        if self.config.disposal == "hold":
            self.held_sockets.append(sock)
        else:
            sock.close()

    def reached_target(self, previous: Optional[int], current: int) -> bool:
        """True once the counter is near, at, or has just stepped over the target"""
        target = self.config.target_port
        if target - self.config.lead <= current <= target:
            return True
        if previous is None:
            return False
        step = (current - previous) % PORT_SPACE
        if step == 0 or step > self.config.max_step:
            # Not sequential allocation, a jump says nothing about the target
            return False
        offset = (target - previous) % PORT_SPACE
        return 0 < offset <= step

    def walk_to_target(self) -> Tuple[bool, Optional[int], int]:
        """
        Allocation phase.
        Returns: (reached, last observed port, iterations)
        """
        config = self.config
        start_time = time.time()
        previous = None
        iterations = 0
        self.probe_steps = 0
        self.large_steps = 0

        while iterations < config.budget:
            if config.time_budget is not None and time.time() - start_time >= config.time_budget:
                logger.warning(f"Time budget of {config.time_budget}s spent after {iterations} iterations")
                break

            sock, port = self.allocate_probe()
            iterations += 1
            logger.debug(f"  probe #{iterations}: port {port}")
            self.dispose_probe(sock)
            if previous is not None:
                self.probe_steps += 1
                if (port - previous) % PORT_SPACE > config.max_step:
                    self.large_steps += 1

            if self.reached_target(previous, port):
                logger.info(f"✓ Probe port {port} reached target {config.target_port} after {iterations} iterations")
                return True, port, iterations

            if iterations % config.progress_every == 0:
                logger.info(f"  Probe port {port} (target {config.target_port}), "
                            f"iteration {iterations}/{config.budget}")
            previous = port

        return False, previous, iterations

    def attempt_connect(self) -> ConnectResult:
        """Connect phase: one unbound connect to the target, no retries"""
        address = (self.config.host, self.config.target_port)
        sock = self._new_socket()
        keep = False
        try:
            sock.settimeout(self.config.connect_timeout)
            result = classify_connection(sock, address)
            # A connected socket in hold mode is the one keeping the port hostage
            keep = (self.config.disposal == "hold"
                    and result.outcome is not CollisionOutcome.CONNECTION_REFUSED
                    and result.local_address is not None)
            return result
        finally:
            if keep:
                self.held_sockets.append(sock)
            else:
                sock.close()

    def run(self) -> ReproducerResult:
        """Run the allocation phase, then the connect phase"""
        config = self.config
        logger.info("=" * 70)
        logger.info("EPHEMERAL PORT COLLISION REPRODUCER")
        logger.info("=" * 70)
        logger.info(f"Target: {config.host}:{config.target_port}, budget: {config.budget} iterations, "
                    f"disposal: {config.disposal}, platform: {sys.platform}")

        low, high = ephemeral_port_range()
        if not low <= config.target_port <= high:
            logger.warning(f"⚠ Target port {config.target_port} is outside the ephemeral range "
                           f"{low}-{high}, the counter is not expected to reach it")

        if config.disposal == "hold":
            self.ensure_hold_capacity()

        start_time = time.time()
        try:
            logger.info(f"\n[Phase 1] Allocating probe sockets until the counter reaches {config.target_port}")
            reached, last_port, iterations = self.walk_to_target()

            if not reached:
                logger.warning(f"✗ Budget exhausted after {iterations} iterations (last probe port: {last_port})")
                return ReproducerResult(
                    outcome=CollisionOutcome.BUDGET_EXHAUSTED,
                    target_port=config.target_port,
                    last_probe_port=last_port,
                    iterations=iterations,
                    held_ports=len(self.held_sockets),
                    elapsed=time.time() - start_time,
                    probe_steps=self.probe_steps,
                    large_steps=self.large_steps,
                )

            logger.info(f"\n[Phase 2] Connecting an unbound socket to {config.host}:{config.target_port}")
            connect = self.attempt_connect()
        except ReproducerError:
            self.close()
            raise

        return ReproducerResult(
            outcome=connect.outcome,
            target_port=config.target_port,
            last_probe_port=last_port,
            iterations=iterations,
            connect_attempts=1,
            local_address=connect.local_address,
            remote_address=connect.remote_address,
            error_code=connect.error_code,
            detail=connect.detail,
            held_ports=len(self.held_sockets),
            elapsed=time.time() - start_time,
            probe_steps=self.probe_steps,
            large_steps=self.large_steps,
        )


def log_summary(result: ReproducerResult):
    logger.info("\n" + "=" * 70)
    logger.info("RESULT SUMMARY")
    logger.info("=" * 70)
    logger.info(f"Outcome:          {result.outcome.value}")
    logger.info(f"Target port:      {result.target_port}")
    logger.info(f"Last probe port:  {result.last_probe_port}")
    logger.info(f"Iterations:       {result.iterations}")
    logger.info(f"Connect attempts: {result.connect_attempts}")
    if result.local_address:
        logger.info(f"Local address:    {result.local_address[0]}:{result.local_address[1]}")
        logger.info(f"Remote address:   {result.remote_address[0]}:{result.remote_address[1]}")
    if result.error_code is not None:
        logger.info(f"Error code:       {result.error_code} ({errno.errorcode.get(result.error_code, '?')})")
    if result.detail:
        logger.info(f"Detail:           {result.detail}")
    logger.info(f"Held sockets:     {result.held_ports}")
    logger.info(f"Platform:         {result.platform}")
    logger.info(f"Elapsed:          {result.elapsed:.2f}s")

    if result.outcome is CollisionOutcome.CONNECTED_TO_SELF:
        logger.info("\n🔥 SOCKET CONNECTED TO ITSELF")
        logger.info("  This platform permits TCP simultaneous open with itself.")
    elif result.self_connect_rejected:
        logger.info("\n✓ Connection refused on the target port itself")
        logger.info("  This platform rejects TCP simultaneous open with itself.")
    elif result.outcome is CollisionOutcome.CONNECTION_REFUSED:
        if result.local_port is None:
            logger.warning(f"\n⚠ Connection refused, and the connect socket's port is unknown "
                           f"(it may not have been {result.target_port})")
        else:
            logger.warning(f"\n⚠ Connection refused, but the connect socket was assigned port "
                           f"{result.local_port}, not {result.target_port}")
        logger.warning("  Self-connect was not exercised; nothing is known about this platform's behaviour.")

    if result.sequential_allocation is False:
        logger.warning(f"⚠ Allocation is not sequential on this platform: {result.large_steps}/"
                       f"{result.probe_steps} probe steps jumped more than the sequential step limit")
        logger.warning("  The counter cannot be walked deterministically, reaching the target is chance.")


def port_number(value: str) -> int:
    try:
        port = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid port number: {value!r}")
    if not 1 <= port <= 65535:
        raise argparse.ArgumentTypeError(f"port must be within 1-65535, got {port}")
    return port


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description='Reproduce the ephemeral port self-connect collision',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Exit codes:
  0  target reached and outcome classified
  1  budget exhausted before reaching the target
  2  invalid arguments
  3  unexpected OS-level error

Examples:
  # Walk the counter to 51000 and connect to it
  python3 port_collision_reproducer.py 51000

  # Hold probes open to show the port being held hostage
  python3 port_collision_reproducer.py 51000 -d hold --hold-seconds 30

  # Load defaults from a YAML preset
  python3 port_collision_reproducer.py 51000 -c reproducer_config.yaml
        """
    )

    parser.add_argument('target_port', type=port_number,
                       help='Port the reconnect logic targets (1-65535)')
    parser.add_argument('-b', '--budget', type=int,
                       help='Maximum probe iterations (default: twice the ephemeral range size)')
    parser.add_argument('-t', '--time-budget', type=float,
                       help='Maximum seconds to spend allocating probes')
    parser.add_argument('-d', '--disposal', choices=DISPOSAL_MODES,
                       help='Close probes immediately or hold them open (default: close)')
    parser.add_argument('--host',
                       help='Loopback address to use (default: 127.0.0.1)')
    parser.add_argument('--timeout', dest='connect_timeout', type=float,
                       help='Connect timeout in seconds (default: 1.0)')
    parser.add_argument('--lead', type=int,
                       help='Stop this many ports below the target (default: 1)')
    parser.add_argument('--progress-every', type=int,
                       help='Log progress every N iterations (default: 1000)')
    parser.add_argument('--hold-seconds', type=float, default=0.0,
                       help='In hold mode, keep sockets open this long before exiting')
    parser.add_argument('-c', '--config',
                       help='Optional YAML file with default settings')
    parser.add_argument('-v', '--verbose', action='store_true',
                       help='Enable verbose logging')
    return parser


def main(argv: Optional[List[str]] = None):
    """Main entry point"""
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(asctime)s.%(msecs)03d [%(levelname)s] %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S',
        stream=sys.stdout,
    )
    if args.verbose:
        logger.setLevel(logging.DEBUG)

    overrides = {
        'target_port': args.target_port,
        'budget': args.budget,
        'time_budget': args.time_budget,
        'disposal': args.disposal,
        'host': args.host,
        'connect_timeout': args.connect_timeout,
        'lead': args.lead,
        'progress_every': args.progress_every,
    }
    try:
        if args.config:
            config = ReproducerConfig.from_yaml(args.config, **overrides)
        else:
            config = ReproducerConfig(**{k: v for k, v in overrides.items() if v is not None})
    except (ValueError, TypeError) as e:
        parser.error(str(e))

    try:
        with PortCollisionReproducer(config) as reproducer:
            result = reproducer.run()
            log_summary(result)

            if config.disposal == "hold" and result.outcome is not CollisionOutcome.BUDGET_EXHAUSTED:
                if service_can_bind(config.host, config.target_port):
                    logger.info(f"Service could still bind {config.host}:{config.target_port}")
                else:
                    logger.warning(f"⚠ {config.host}:{config.target_port} is held hostage, "
                                   f"a service restart would fail with EADDRINUSE")
            if reproducer.held_sockets and args.hold_seconds > 0:
                logger.info(f"Holding {len(reproducer.held_sockets)} sockets for {args.hold_seconds}s...")
                time.sleep(args.hold_seconds)
    except KeyboardInterrupt:
        logger.warning("\nRun interrupted by user")
        sys.exit(EXIT_INTERRUPTED)
    except (ReproducerError, OSError) as e:
        logger.error(f"Unexpected OS-level error: {e}", exc_info=args.verbose)
        sys.exit(EXIT_OS_ERROR)

    if result.outcome is CollisionOutcome.BUDGET_EXHAUSTED:
        sys.exit(EXIT_BUDGET_EXHAUSTED)
    sys.exit(EXIT_OK)


if __name__ == '__main__':
    main()
