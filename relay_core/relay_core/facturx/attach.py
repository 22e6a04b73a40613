"""Embed the CII XML into the rendered PDF as the Factur-X attachment.

The XML goes in under ``factur-x.xml`` with ``/AFRelationship /Data`` and is
listed in the catalog's ``/AF`` array, which is where Factur-X readers look
for it.  The reportlab output is not itself PDF/A-3 (no XMP metadata or
output intent), so strict validators still flag the container.
"""

from __future__ import annotations

import io
import logging

from pypdf import PdfReader, PdfWriter
from pypdf.generic import ArrayObject, NameObject, TextStringObject

logger = logging.getLogger(__name__)

FACTURX_ATTACHMENT_NAME = "factur-x.xml"


def embed_facturx_xml(pdf: bytes, xml: bytes) -> bytes:
    """Return *pdf* with *xml* attached as ``factur-x.xml``."""
    writer = PdfWriter(clone_from=PdfReader(io.BytesIO(pdf)))
    writer.add_attachment(FACTURX_ATTACHMENT_NAME, xml)

    names = writer.root_object["/Names"]["/EmbeddedFiles"]["/Names"]
    position = next(
        index for index in range(0, len(names), 2) if names[index] == FACTURX_ATTACHMENT_NAME
    )
    filespec = names[position + 1].get_object()
    filespec[NameObject("/UF")] = TextStringObject(FACTURX_ATTACHMENT_NAME)
    filespec[NameObject("/Desc")] = TextStringObject("Factur-X invoice data")
    filespec[NameObject("/AFRelationship")] = NameObject("/Data")
    filespec["/EF"]["/F"].get_object()[NameObject("/Subtype")] = NameObject("/text/xml")

    reference = writer._add_object(filespec)
    names[position + 1] = reference
    writer.root_object[NameObject("/AF")] = ArrayObject([reference])

    out = io.BytesIO()
    writer.write(out)
    embedded = out.getvalue()
    logger.debug("Attached %d-byte CII XML to a %d-byte PDF", len(xml), len(pdf))
    return embedded
