#!/usr/bin/env python3
"""
pgen-server: network-controlled display test-pattern generator.

Lets calibration software (CalMAN, HCFR, LightSpace, DisplayCAL/Resolve)
select the pattern on screen and reconfigure the output signal.

Modes:
  pgen     discovery (UDP 1977) + PGenerator (TCP 85) + UPGCI (TCP 2100)
  resolve  connect out to a Resolve XML pattern server
  manual   show a built-in pattern
"""

import argparse
import dataclasses
import logging
import signal
import sys
import threading

from pgen_server import __version__ as VERSION
from pgen_server.client import discover
from pgen_server.config import (
    MODES,
    ServerConfig,
    load_config,
    parse_enum,
    parse_resolution,
    parse_rgb,
)
from pgen_server.discovery import DiscoveryResponder
from pgen_server.hdr import HdrSink, RecordingHdrSink
from pgen_server.patterns import builtin_pattern
from pgen_server.pgen import PGenServer
from pgen_server.preview import RenderConsumer
from pgen_server.resolve import ResolveClient
from pgen_server.signal_state import (
    ColorFormat,
    Colorimetry,
    Eotf,
    PatternMode,
    QuantRange,
    SignalState,
)
from pgen_server.upgci import UpgciServer

logger = logging.getLogger(__name__)


# ===========================================================================
# Composition root
# ===========================================================================
class Application:
    """Owns the shared state and every service of the selected mode."""

    def __init__(self, config: ServerConfig, hdr_sink: HdrSink | None = None):
        self.config = config
        self.state = SignalState()
        self.hdr_sink = hdr_sink if hdr_sink is not None else RecordingHdrSink()
        self.consumer = RenderConsumer(
            self.state,
            hdr_sink=self.hdr_sink,
            snapshot_path=config.snapshot_path,
            framebuffer_path=config.framebuffer_path,
        )
        self.services: list = []
        self._stopped = threading.Event()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def start(self) -> None:
        self._apply_initial_signal()
        self.consumer.start()
        try:
            if self.config.mode == "pgen":
                self._start_pgen_mode()
            elif self.config.mode == "resolve":
                self._start_resolve_mode()
            else:
                self._start_manual_mode()
        except OSError:
            self.stop()
            raise

    def stop(self) -> None:
        for service in reversed(self.services):
            try:
                service.stop()
            except OSError as e:
                logger.warning("Error stopping %s: %s", type(service).__name__, e)
        self.services.clear()
        self.state.set_commands([])
        self.consumer.stop()
        self._stopped.set()
        logger.info("Servers stopped")

    def run(self) -> None:
        """Start, then block until SIGINT/SIGTERM."""
        def _on_signal(signum, frame):
            logger.info("Received signal %d, shutting down", signum)
            self._stopped.set()

        signal.signal(signal.SIGINT, _on_signal)
        signal.signal(signal.SIGTERM, _on_signal)
        self.start()
        try:
            while not self._stopped.wait(0.5):
                pass
        finally:
            self.stop()

    # ------------------------------------------------------------------
    # Modes
    # ------------------------------------------------------------------
    def _apply_initial_signal(self) -> None:
        cfg = self.config
        state = self.state
        with state.mode_transaction():
            state.set_mode(cfg.bit_depth, cfg.hdr)
            if cfg.hdr and cfg.eotf != Eotf.SDR:
                state.apply_eotf_mode(cfg.eotf)
            state.configure_signal(color_format=cfg.color_format,
                                   colorimetry=cfg.colorimetry,
                                   quant_range=cfg.quant_range)
        config = state.configuration()
        logger.info("Starting in %s mode (%d-bit %s EOTF=%s color=%s colorimetry=%s range=%s)",
                    cfg.mode, config.bit_depth, "HDR" if config.is_hdr else "SDR",
                    config.eotf.name, config.color_format.name,
                    config.colorimetry.name, config.quant_range.name)

    def _start_pgen_mode(self) -> None:
        cfg = self.config
        if cfg.enable_discovery:
            self._start(DiscoveryResponder(cfg.device_name, host=cfg.host))
        self._start(PGenServer(self.state, hdr=cfg.hdr, passive=cfg.passive_rgb,
                               resolution=cfg.resolution, debug=cfg.debug, host=cfg.host))
        if cfg.enable_upgci:
            self._start(UpgciServer(self.state, on_mode_change=self._on_mode_change,
                                    hdr_sink=self.hdr_sink, debug=cfg.debug, host=cfg.host))
        logger.info("PGen mode: all servers started")

    def _start_resolve_mode(self) -> None:
        cfg = self.config
        self._start(ResolveClient(self.state, cfg.resolve_host, cfg.resolve_port,
                                  hdr=cfg.hdr, debug=cfg.debug))

    def _start_manual_mode(self) -> None:
        self.state.pattern_mode = PatternMode.MANUAL
        self.state.set_commands(builtin_pattern(self.config.pattern, self.state.is_hdr))
        logger.info("Manual mode: displaying %s pattern", self.config.pattern)

    def _start(self, service) -> None:
        service.start()
        self.services.append(service)

    def _on_mode_change(self, is_hdr: bool, bits: int, eotf: Eotf) -> None:
        logger.info("CalMAN mode change: %s %d-bit EOTF=%s",
                    "HDR" if is_hdr else "SDR", bits, eotf.name)
        if is_hdr:
            self.hdr_sink.apply_signal_settings(eotf, self.state.color_format,
                                                self.state.colorimetry, bits)


# ===========================================================================
# Command line
# ===========================================================================
def _enum_arg(enum_type):
    def convert(text):
        try:
            return parse_enum(enum_type, text)
        except ValueError as e:
            raise argparse.ArgumentTypeError(str(e)) from None
    convert.__name__ = enum_type.__name__
    return convert


def _rgb_arg(text):
    try:
        return parse_rgb(text)
    except ValueError as e:
        raise argparse.ArgumentTypeError(str(e)) from None


def _resolution_arg(text):
    try:
        return parse_resolution(text)
    except ValueError:
        raise argparse.ArgumentTypeError(f"expected WIDTHxHEIGHT, got {text!r}") from None


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="pgen-server", description=__doc__.split("\n\n")[0].strip())
    parser.add_argument("--version", action="version", version=f"%(prog)s {VERSION}")
    parser.add_argument("--mode", choices=MODES)
    parser.add_argument("--name", dest="device_name", help="device name in discovery replies")
    parser.add_argument("--host", help="bind address for all services")
    parser.add_argument("--resolution", type=_resolution_arg, help="reference resolution, e.g. 3840x2160")
    parser.add_argument("--bits", dest="bit_depth", type=int, choices=(8, 10, 12))
    parser.add_argument("--hdr", action="store_true", default=None)
    parser.add_argument("--eotf", type=_enum_arg(Eotf))
    parser.add_argument("--color-format", type=_enum_arg(ColorFormat))
    parser.add_argument("--colorimetry", type=_enum_arg(Colorimetry))
    parser.add_argument("--quant-range", type=_enum_arg(QuantRange))
    parser.add_argument("--passive", dest="passive_rgb", type=_rgb_arg, help="r,g,b idle pattern for PGen")
    parser.add_argument("--no-discovery", dest="enable_discovery", action="store_false", default=None)
    parser.add_argument("--no-upgci", dest="enable_upgci", action="store_false", default=None)
    parser.add_argument("--resolve-host")
    parser.add_argument("--resolve-port", type=int)
    parser.add_argument("--pattern", help="manual-mode pattern name or draw string")
    parser.add_argument("--snapshot", dest="snapshot_path", help="write each frame to this PNG")
    parser.add_argument("--framebuffer", dest="framebuffer_path", help="write RGB565 frames here")
    parser.add_argument("--log-level", type=str.upper)
    parser.add_argument("--debug", action="store_true", default=None, help="log every protocol message")
    parser.add_argument("--discover", action="store_true",
                        help="look for PGenerators on the network and exit")
    return parser


def config_from_args(args: argparse.Namespace, base: ServerConfig | None = None) -> ServerConfig:
    base = base if base is not None else load_config()
    overrides = {}
    for field in dataclasses.fields(ServerConfig):
        value = getattr(args, field.name, None)
        if value is not None:
            overrides[field.name] = value
    if args.resolution is not None:
        overrides["width"], overrides["height"] = args.resolution
    return dataclasses.replace(base, **overrides)


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    try:
        config = config_from_args(args)
    except ValueError as e:
        print(f"pgen-server: {e}", file=sys.stderr)
        return 2

    logging.basicConfig(
        level=logging.DEBUG if config.debug else getattr(logging, config.log_level, logging.INFO),
        format="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
    )

    if args.discover:
        found = discover(timeout=3.0)
        for ip, name in found:
            print(f"{ip}\t{name}")
        if not found:
            print("No PGenerator found on network")
        return 0 if found else 1

    app = Application(config)
    try:
        app.run()
    except OSError as e:
        logger.error("Failed to start: %s", e)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
