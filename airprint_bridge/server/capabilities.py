from typing import Dict, Iterable, List, Tuple
import logging

from .printer_backend import PrinterDescriptor

logger = logging.getLogger(__name__)

FALLBACK_RESOLUTION = 300

# image/urf must come first for AirPrint clients
DOCUMENT_FORMATS = ["image/urf", "application/pdf", "image/jpeg", "image/png"]

PRODUCT_MAX_LENGTH = 128

# URF tokens
GRAYSCALE = "W8"
FULL_COLOR = "SRGB24"
MAX_QUALITY = "CP255"
SIMPLEX = "DM1"
DUPLEX_LONG_EDGE = "DM3"
DUPLEX_SHORT_EDGE = "DM4"


def resolution_token(resolutions: Iterable[int]) -> str:
    """Collapses a set of DPI values into a single URF ``RS`` token.

    Only the minimum and the maximum survive: ``[300, 600, 1200]`` becomes
    ``RS300-1200``. A single value gives ``RS<value>`` and an empty set falls
    back to ``RS300``.
    """
    unique = sorted(set(resolutions)) or [FALLBACK_RESOLUTION]
    if len(unique) == 1:
        return f"RS{unique[0]}"
    return f"RS{unique[0]}-{unique[-1]}"


class URFCapabilities:

    def __init__(self, color_supported: bool = False, duplex_supported: bool = False,
                 resolutions: Iterable[int] = ()):
        self.color_modes = [GRAYSCALE]
        if color_supported:
            self.color_modes.append(FULL_COLOR)

        self.quality = [MAX_QUALITY]

        self.duplex = [SIMPLEX]
        if duplex_supported:
            self.duplex.extend([DUPLEX_LONG_EDGE, DUPLEX_SHORT_EDGE])

        self.resolutions = list(resolutions) or [FALLBACK_RESOLUTION]

    @classmethod
    def from_printer(cls, printer: PrinterDescriptor) -> "URFCapabilities":
        return cls(printer.color_supported, printer.duplex_supported, printer.resolutions)

    # Order: color modes, quality, resolution, duplex
    def tokens(self) -> List[str]:
        return [*self.color_modes, *self.quality, resolution_token(self.resolutions), *self.duplex]

    def __str__(self):
        return ",".join(self.tokens())


def sanitize_product(make_model: str) -> str:
    if not make_model:
        return "Unknown Printer"
    product = make_model.replace("(", "").replace(")", "")
    return product[:PRODUCT_MAX_LENGTH]


def build_txt_records(printer: PrinterDescriptor, urf: str = None) -> Dict[str, str]:
    if urf is None:
        urf = str(URFCapabilities.from_printer(printer))

    records = {
        'txtvers': '1',
        'qtotal': '1',
        'rp': f'printers/{printer.name}',
        'ty': printer.make_model or printer.name,
        'pdl': ','.join(DOCUMENT_FORMATS),
        'URF': urf,
        'Color': 'T' if printer.color_supported else 'F',
        'Duplex': 'T' if printer.duplex_supported else 'F',
        'product': f'({sanitize_product(printer.make_model)})',
        'priority': '50',
        'Transparent': 'F',
        'Binary': 'F',
        'TBCP': 'F',
    }

    note = printer.location or printer.info
    if note:
        records['note'] = note

    # No media record: long media lists break Avahi and clients query media over IPP anyway
    return records


def txt_record_pairs(records: Dict[str, str]) -> List[str]:
    return [f"{key}={records[key]}" for key in sorted(records)]


def translate(printer: PrinterDescriptor) -> Tuple[str, Dict[str, str]]:
    urf = str(URFCapabilities.from_printer(printer))
    records = build_txt_records(printer, urf)
    logger.debug(f"Capabilities for {printer.name}: URF={urf}")
    return urf, records
