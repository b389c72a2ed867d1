"""Module descriptions and the selection of their unwind data."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional, Union

AddressRange = range


def _as_range(value) -> Optional[range]:
    if value is None or isinstance(value, range):
        return value
    start, end = value
    return range(start, end)


class ModuleSectionInfo(ABC):
    """Access to a module's sections and segments.

    Each data method is called at most once per name, so implementations may
    hand over their data rather than copy it.
    """

    @property
    @abstractmethod
    def base_svma(self) -> int:
        """The image base address as stated in the module."""

    @abstractmethod
    def section_svma_range(self, name: str) -> Optional[range]:
        """Return the section's stated address range."""

    @abstractmethod
    def section_data(self, name: str) -> Optional[bytes]:
        """Return the section's data."""

    def segment_svma_range(self, name: str) -> Optional[range]:
        """Return the segment's stated address range."""
        return None

    def segment_data(self, name: str) -> Optional[bytes]:
        """Return the segment's data."""
        return None


_SECTION_RANGE_FIELDS = {
    "__text": "text_svma",
    ".text": "text_svma",
    "__stubs": "stubs_svma",
    "__stub_helper": "stub_helper_svma",
    "__eh_frame": "eh_frame_svma",
    ".eh_frame": "eh_frame_svma",
    "__eh_frame_hdr": "eh_frame_hdr_svma",
    ".eh_frame_hdr": "eh_frame_hdr_svma",
    "__got": "got_svma",
    ".got": "got_svma",
}

_SECTION_DATA_FIELDS = {
    "__text": "text",
    ".text": "text",
    "__unwind_info": "unwind_info",
    "__eh_frame": "eh_frame",
    ".eh_frame": "eh_frame",
    "__eh_frame_hdr": "eh_frame_hdr",
    ".eh_frame_hdr": "eh_frame_hdr",
    "__debug_frame": "debug_frame",
    ".debug_frame": "debug_frame",
}


@dataclass
class ExplicitModuleSectionInfo(ModuleSectionInfo):
    """Section addresses (SVMAs) and data supplied directly."""

    base_svma: int = 0
    text_svma: Optional[range] = None
    text: Optional[bytes] = None
    stubs_svma: Optional[range] = None
    stub_helper_svma: Optional[range] = None
    got_svma: Optional[range] = None
    unwind_info: Optional[bytes] = None
    eh_frame_svma: Optional[range] = None
    eh_frame: Optional[bytes] = None
    eh_frame_hdr_svma: Optional[range] = None
    eh_frame_hdr: Optional[bytes] = None
    debug_frame: Optional[bytes] = None
    text_segment_svma: Optional[range] = None
    text_segment: Optional[bytes] = None

    def __post_init__(self) -> None:
        for field_name in (
            "text_svma",
            "stubs_svma",
            "stub_helper_svma",
            "got_svma",
            "eh_frame_svma",
            "eh_frame_hdr_svma",
            "text_segment_svma",
        ):
            setattr(self, field_name, _as_range(getattr(self, field_name)))

    def _take(self, field_name: Optional[str]) -> Optional[bytes]:
        if field_name is None:
            return None
        data = getattr(self, field_name)
        setattr(self, field_name, None)
        return data

    def section_svma_range(self, name: str) -> Optional[range]:
        field_name = _SECTION_RANGE_FIELDS.get(name)
        return None if field_name is None else getattr(self, field_name)

    def section_data(self, name: str) -> Optional[bytes]:
        return self._take(_SECTION_DATA_FIELDS.get(name))

    def segment_svma_range(self, name: str) -> Optional[range]:
        return self.text_segment_svma if name == "__TEXT" else None

    def segment_data(self, name: str) -> Optional[bytes]:
        return self._take("text_segment" if name == "__TEXT" else None)


@dataclass(frozen=True)
class TextByteData:
    """Instruction bytes and the stated address range they cover."""

    data: bytes
    svma_range: range


@dataclass(frozen=True)
class CompactUnwindData:
    """mach-O ``__unwind_info``, optionally backed by ``__eh_frame``."""

    unwind_info: bytes
    eh_frame: Optional[bytes] = None
    stubs_svma: Optional[range] = None
    stub_helper_svma: Optional[range] = None
    text_data: Optional[TextByteData] = None


@dataclass(frozen=True)
class EhFrameData:
    """DWARF CFI from ``.eh_frame``, with the ``.eh_frame_hdr`` index if present."""

    eh_frame: bytes
    eh_frame_hdr: Optional[bytes] = None


@dataclass(frozen=True)
class DebugFrameData:
    """DWARF CFI from ``.debug_frame``."""

    debug_frame: bytes


@dataclass(frozen=True)
class NoUnwindData:
    """No unwind information; unwinding uses the fallback rule."""


UnwindData = Union[CompactUnwindData, EhFrameData, DebugFrameData, NoUnwindData]


def _text_byte_data(section_info: ModuleSectionInfo) -> Optional[TextByteData]:
    # Prefer the whole __TEXT segment; it also holds __stubs and __stub_helper.
    data = section_info.segment_data("__TEXT")
    svma_range = section_info.segment_svma_range("__TEXT")
    if data is not None and svma_range is not None:
        return TextByteData(data, _as_range(svma_range))
    data = section_info.section_data("__text")
    svma_range = section_info.section_svma_range("__text")
    if data is not None and svma_range is not None:
        return TextByteData(data, _as_range(svma_range))
    return None


def classify_unwind_data(section_info: ModuleSectionInfo) -> UnwindData:
    """Pick the unwind data a module's sections provide."""
    unwind_info = section_info.section_data("__unwind_info")
    if unwind_info is not None:
        eh_frame = section_info.section_data("__eh_frame")
        stubs = _as_range(section_info.section_svma_range("__stubs"))
        stub_helper = _as_range(section_info.section_svma_range("__stub_helper"))
        return CompactUnwindData(
            unwind_info=unwind_info,
            eh_frame=eh_frame,
            stubs_svma=stubs,
            stub_helper_svma=stub_helper,
            text_data=_text_byte_data(section_info),
        )

    eh_frame = section_info.section_data(".eh_frame")
    if eh_frame is None:
        eh_frame = section_info.section_data("__eh_frame")
    if eh_frame is not None:
        eh_frame_hdr = section_info.section_data(".eh_frame_hdr")
        if eh_frame_hdr is None:
            eh_frame_hdr = section_info.section_data("__eh_frame_hdr")
        return EhFrameData(eh_frame, eh_frame_hdr)

    debug_frame = section_info.section_data(".debug_frame")
    if debug_frame is not None:
        return DebugFrameData(debug_frame)
    return NoUnwindData()


class Module:
    """A module (binary image, shared library) loaded in a process."""

    __slots__ = ("name", "avma_range", "base_avma", "base_svma", "unwind_data")

    def __init__(
        self,
        name: str,
        avma_range,
        base_avma: int,
        section_info: ModuleSectionInfo,
    ) -> None:
        self.name = name
        self.avma_range: range = _as_range(avma_range)
        self.base_avma = base_avma
        self.unwind_data: UnwindData = classify_unwind_data(section_info)
        self.base_svma = section_info.base_svma

    def __repr__(self) -> str:
        return (
            f"Module(name={self.name!r}, avma_range=range({self.avma_range.start:#x}, "
            f"{self.avma_range.stop:#x}), base_avma={self.base_avma:#x}, "
            f"base_svma={self.base_svma:#x}, unwind_data={type(self.unwind_data).__name__})"
        )