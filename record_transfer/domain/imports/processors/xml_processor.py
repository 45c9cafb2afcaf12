from lxml import etree
from typing import List, Dict, Any, Tuple
import io


def process_xml(file_content: bytes) -> Tuple[List[Dict[str, Any]], List[str]]:
    """
    Process XML file and return (records, column_names).

    Each child of the document root is a record; its child elements are the
    record's columns, taken as text.
    """
    root = etree.parse(io.BytesIO(file_content)).getroot()

    records = []
    columns: List[str] = []
    for record_element in root:
        if not isinstance(record_element.tag, str):
            continue  # comments / processing instructions
        record = {}
        for child in record_element:
            if not isinstance(child.tag, str):
                continue
            tag = etree.QName(child).localname
            record[tag] = child.text if child.text is not None else ""
            if tag not in columns:
                columns.append(tag)
        records.append(record)

    return records, columns
