"""
VLSV footer parsing.
Locates the trailing XML index of a VLSV file and describes every binary block.
"""
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple
import logging
import struct
import xml.etree.ElementTree as ET

import pandas as pd

from .exceptions import FormatError

logger = logging.getLogger(__name__)

# Endianness marker (1 byte, padded to 8) followed by the uint64 footer offset
HEADER_SIZE = 16

_ENDIAN_MARKERS = {0: '<', 1: '>'}

_REQUIRED_ATTRS = ('arraysize', 'vectorsize', 'datasize', 'datatype')


@dataclass(frozen=True)
class BlockDescriptor:
    """
    Description of one binary block as recorded in the footer.

    Attributes
    ----------
    tag : str
        XML tag of the block (VARIABLE, PARAMETER, MESH_BBOX, ...)
    name : str
        Block name, possibly population-qualified ("proton/vg_rho")
    mesh : str or None
        Mesh the block belongs to
    offset : int
        Byte offset of the first element
    array_size : int
        Number of elements
    vector_size : int
        Number of components per element
    data_size : int
        Size in bytes of one component
    datatype : str
        One of 'int', 'uint', 'float'
    attrs : dict
        All remaining XML attributes
    """
    tag: str
    name: Optional[str]
    mesh: Optional[str]
    offset: int
    array_size: int
    vector_size: int
    data_size: int
    datatype: str
    attrs: Dict[str, str] = field(default_factory=dict, compare=False, hash=False)

    @property
    def nbytes(self) -> int:
        """Total size of the block in bytes."""
        return self.array_size * self.vector_size * self.data_size

    @property
    def element_nbytes(self) -> int:
        """Size in bytes of one element (all components)."""
        return self.vector_size * self.data_size


@dataclass(frozen=True)
class VariableInfo:
    """
    Variable metadata from the footer: plain unit, LaTeX unit,
    LaTeX description and the conversion factor to SI units.
    """
    unit: str = ''
    unit_latex: str = ''
    variable_latex: str = ''
    unit_conversion: str = ''


class FooterIndex:
    """
    Parsed XML footer of a VLSV file.

    Blocks are indexed by tag, then by (name, mesh). Element order in the
    footer is not significant.
    """

    def __init__(self, endian: str, footer_offset: int, blocks: List[BlockDescriptor]):
        self.endian = endian
        self.footer_offset = footer_offset
        self._blocks = blocks
        self._by_tag: Dict[str, List[BlockDescriptor]] = {}
        for block in blocks:
            self._by_tag.setdefault(block.tag, []).append(block)

    @classmethod
    def from_file(cls, fileobj, file_size: int) -> "FooterIndex":
        """
        Locate and parse the footer of an open binary file.

        Parameters
        ----------
        fileobj : binary file object
            Open VLSV file
        file_size : int
            Size of the file in bytes

        Returns
        -------
        FooterIndex
        """
        fileobj.seek(0)
        header = fileobj.read(HEADER_SIZE)
        if len(header) < HEADER_SIZE:
            raise FormatError(f"File too short for a VLSV header: {len(header)} bytes")

        marker = header[0]
        if marker not in _ENDIAN_MARKERS:
            raise FormatError(f"Unknown endianness marker {marker} at byte 0")
        endian = _ENDIAN_MARKERS[marker]

        footer_offset = struct.unpack(endian + 'Q', header[8:16])[0]
        if footer_offset < HEADER_SIZE or footer_offset >= file_size:
            raise FormatError(
                f"Footer offset {footer_offset} outside file of {file_size} bytes"
            )

        fileobj.seek(footer_offset)
        xml_data = fileobj.read()
        return cls.from_xml(xml_data, endian, footer_offset, file_size)

    @classmethod
    def from_xml(cls, xml_data, endian: str = '<', footer_offset: int = 0,
                 file_size: Optional[int] = None) -> "FooterIndex":
        """
        Parse footer XML text into an index.

        Parameters
        ----------
        xml_data : bytes or str
            The XML footer
        endian : str
            numpy byte order character of the payload
        footer_offset : int
            Offset of the footer in the file
        file_size : int, optional
            When given, every block byte range is checked against it
        """
        try:
            root = ET.fromstring(xml_data)
        except ET.ParseError as e:
            raise FormatError(f"Malformed VLSV footer at offset {footer_offset}: {e}")

        blocks = []
        for elem in root:
            block = _parse_block(elem)
            if file_size is not None and block.offset + block.nbytes > file_size:
                raise FormatError(
                    f"{block.tag} '{block.name}' spans bytes "
                    f"[{block.offset}, {block.offset + block.nbytes}) "
                    f"beyond end of file ({file_size} bytes)"
                )
            blocks.append(block)

        logger.debug("Parsed VLSV footer: %d blocks, endian '%s'", len(blocks), endian)
        return cls(endian, footer_offset, blocks)

    def blocks(self, tag: Optional[str] = None) -> List[BlockDescriptor]:
        """Return all blocks, or all blocks with the given tag."""
        if tag is None:
            return list(self._blocks)
        return list(self._by_tag.get(tag, []))

    def find(self, tag: str, name: Optional[str] = None,
             mesh: Optional[str] = None) -> Optional[BlockDescriptor]:
        """
        Find a block by tag and optional name and mesh.

        Returns
        -------
        BlockDescriptor or None
        """
        for block in self._by_tag.get(tag, []):
            if name is not None and block.name != name:
                continue
            if mesh is not None and block.mesh != mesh:
                continue
            return block
        return None

    def has(self, tag: str, name: Optional[str] = None, mesh: Optional[str] = None) -> bool:
        return self.find(tag, name, mesh) is not None

    def variable_names(self) -> List[str]:
        """Names of all VARIABLE blocks in footer order."""
        return [b.name for b in self._by_tag.get('VARIABLE', [])]

    def parameter_names(self) -> List[str]:
        return [b.name for b in self._by_tag.get('PARAMETER', [])]

    def mesh_names(self) -> List[str]:
        return [b.name for b in self._by_tag.get('MESH', [])]

    def populations(self) -> List[str]:
        """Names of particle populations with velocity-space data."""
        return [b.name for b in self._by_tag.get('BLOCKIDS', [])]

    def variable_info(self, name: str) -> VariableInfo:
        """Unit and description strings of a stored variable."""
        block = self.find('VARIABLE', name)
        if block is None:
            return VariableInfo()
        return VariableInfo(
            unit=block.attrs.get('unit', ''),
            unit_latex=block.attrs.get('unitLaTeX', ''),
            variable_latex=block.attrs.get('variableLaTeX', ''),
            unit_conversion=block.attrs.get('unitConversion', ''),
        )

    def to_dataframe(self) -> pd.DataFrame:
        """Tabulate every block of the footer."""
        df_cols = ['tag', 'name', 'mesh', 'offset', 'array_size',
                   'vector_size', 'data_size', 'datatype']
        df_meta = pd.DataFrame(
            [[getattr(b, col) for col in df_cols] for b in self._blocks],
            columns=df_cols,
        )
        df_meta.index.name = 'block_id'
        df_meta['nbytes'] = df_meta['array_size'] * df_meta['vector_size'] * df_meta['data_size']
        return df_meta


def _parse_block(elem) -> BlockDescriptor:
    """Build a BlockDescriptor from one footer element."""
    attrs = dict(elem.attrib)
    name = attrs.pop('name', None)
    mesh = attrs.pop('mesh', None)

    missing = [a for a in _REQUIRED_ATTRS if a not in attrs]
    if missing:
        raise FormatError(f"{elem.tag} '{name}' lacks attributes {missing}")

    try:
        offset = int((elem.text or '').strip())
        array_size = int(attrs.pop('arraysize'))
        vector_size = int(attrs.pop('vectorsize'))
        data_size = int(attrs.pop('datasize'))
    except ValueError as e:
        raise FormatError(f"{elem.tag} '{name}' has a non-integer size or offset: {e}")

    if min(offset, array_size, vector_size, data_size) < 0:
        raise FormatError(f"{elem.tag} '{name}' has a negative size or offset")

    return BlockDescriptor(
        tag=elem.tag,
        name=name,
        mesh=mesh,
        offset=offset,
        array_size=array_size,
        vector_size=vector_size,
        data_size=data_size,
        datatype=attrs.pop('datatype'),
        attrs=attrs,
    )


def split_population(name: str) -> Tuple[Optional[str], str]:
    """
    Split a population-qualified name.

    >>> split_population("proton/vg_rho")
    ('proton', 'vg_rho')
    >>> split_population("vg_b_vol")
    (None, 'vg_b_vol')
    """
    if '/' in name:
        pop, _, base = name.partition('/')
        return pop, base
    return None, name

