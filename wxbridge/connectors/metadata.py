"""Parsers for the XML metadata embedded in image and app-message content."""

from __future__ import annotations

import xml.etree.ElementTree as ET

from pydantic import BaseModel, ConfigDict

from wxbridge.exceptions import MetadataParseError

APP_TYPE_FILE = "6"


class AppAttachmentInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    title: str | None = None
    app_type: str | None = None
    total_len: int = 0
    attach_id: str | None = None
    cdn_url: str | None = None

    @property
    def is_file(self) -> bool:
        return self.app_type == APP_TYPE_FILE

    @property
    def downloadable(self) -> bool:
        return bool(self.attach_id or self.cdn_url)


class ImageInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    aeskey: str | None = None
    cdnthumburl: str | None = None
    cdnthumblength: int = 0
    cdnmidimgurl: str | None = None
    cdnbigimgurl: str | None = None
    length: int = 0
    hdlength: int = 0
    md5: str | None = None

    @property
    def total_length(self) -> int:
        """Byte size to request: the HD size when advertised, else the normal one."""
        return self.hdlength or self.length


def _parse_root(content: str) -> ET.Element:
    # Group-chat payloads are prefixed with "<sender>:\n" before the XML.
    start = content.find("<")
    if start < 0:
        raise MetadataParseError("content carries no XML element")
    try:
        return ET.fromstring(content[start:].strip())
    except ET.ParseError as e:
        raise MetadataParseError(f"malformed XML metadata: {e}") from e


def _to_int(value: str | None) -> int:
    if value is None:
        return 0
    value = value.strip()
    return int(value) if value.isdigit() else 0


def _text(parent: ET.Element | None, tag: str) -> str | None:
    if parent is None:
        return None
    node = parent.find(tag)
    if node is None or node.text is None:
        return None
    text = node.text.strip()
    return text or None


def _first_text(tag: str, *parents: ET.Element | None) -> str | None:
    for parent in parents:
        value = _text(parent, tag)
        if value is not None:
            return value
    return None


def parse_app_message(content: str) -> AppAttachmentInfo:
    """Extract title, sub-type and attachment coordinates from an app message.

    Expected shape::

        <msg><appmsg>
          <title>report.pdf</title><type>6</type>
          <appattach><totallen>1024</totallen><attachid>..</attachid>
            <cdnattachurl>..</cdnattachurl></appattach>
        </appmsg></msg>

    Every element is optional and may also sit directly under the root.
    CDATA sections are handled by the XML parser.
    """
    root = _parse_root(content)
    appmsg = root if root.tag == "appmsg" else root.find("appmsg")
    attach = appmsg.find("appattach") if appmsg is not None else None
    if attach is None:
        attach = root.find("appattach")

    return AppAttachmentInfo(
        title=_first_text("title", appmsg, root),
        app_type=_first_text("type", appmsg, root),
        total_len=_to_int(_first_text("totallen", attach, appmsg, root)),
        attach_id=_first_text("attachid", attach, appmsg, root),
        cdn_url=_first_text("cdnattachurl", attach, appmsg, root),
    )


def parse_image_message(content: str) -> ImageInfo:
    """Read the attributes of the ``<img>`` element of an image message."""
    root = _parse_root(content)
    img = root if root.tag == "img" else root.find(".//img")
    if img is None:
        raise MetadataParseError("image message has no <img> element")

    attrs = img.attrib
    return ImageInfo(
        aeskey=attrs.get("aeskey") or None,
        cdnthumburl=attrs.get("cdnthumburl") or None,
        cdnthumblength=_to_int(attrs.get("cdnthumblength")),
        cdnmidimgurl=attrs.get("cdnmidimgurl") or None,
        cdnbigimgurl=attrs.get("cdnbigimgurl") or None,
        length=_to_int(attrs.get("length")),
        hdlength=_to_int(attrs.get("hdlength")),
        md5=attrs.get("md5") or None,
    )
