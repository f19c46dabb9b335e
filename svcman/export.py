import csv
import io
import xml.etree.ElementTree as ET

from svcman.values import ServiceRow

CSV_HEADER = ("ServiceName", "DisplayName", "BinaryPath", "Status")

# (attribute, width) of each datapacket column
XML_FIELDS = (
    ("ServiceName", 256),
    ("DisplayName", 256),
    ("BinaryPath", 2000),
    ("Status", 20),
)


def _values(row: ServiceRow):
    return (row.name, row.display_name, row.binary_path, row.state_label)


def to_csv(rows: list[ServiceRow], delimiter: str = ";") -> str:
    buf = io.StringIO()
    writer = csv.writer(buf, delimiter=delimiter, lineterminator="\n")
    writer.writerow(CSV_HEADER)
    for row in rows:
        writer.writerow(_values(row))
    return buf.getvalue()


def to_xml(rows: list[ServiceRow]) -> str:
    """Datapacket document: field metadata followed by one ROW element per service."""
    packet = ET.Element("DATAPACKET", Version="2.0")
    metadata = ET.SubElement(packet, "METADATA")
    fields = ET.SubElement(metadata, "FIELDS")
    for name, width in XML_FIELDS:
        ET.SubElement(fields, "FIELD", attrname=name, fieldtype="string", WIDTH=str(width))
    ET.SubElement(metadata, "PARAMS")
    rowdata = ET.SubElement(packet, "ROWDATA")
    for row in rows:
        ET.SubElement(rowdata, "ROW", {name: value for (name, _), value in zip(XML_FIELDS, _values(row))})
    return ET.tostring(packet, encoding="unicode")
