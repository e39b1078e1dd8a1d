import io

import pytest

from pcidevices.usbid import (
    Parser,
    classify,
    describe,
    describe_with_vendor_and_product,
)
from pcidevices.usbtypes import DeviceDesc, InterfaceSetting

SAMPLE = (
    "# sample list\n"
    "#\n"
    "0951  Kingston Technology\n"
    "\t1666  DataTraveler 100 G3/G4/SE9 G2/50 Kyson\n"
    "\t\t00  Mass Storage\n"
    "1000  Speed Tech Corp.\n"
    "\t153b  Example Reader\n"
    "\n"
    "C 00  (Defined at Interface level)\n"
    "C 03  Human Interface Device\n"
    "\t01  Boot Interface Subclass\n"
    "\t\t01  Keyboard\n"
)


@pytest.fixture
def parsed():
    return Parser().parse_ids(io.StringIO(SAMPLE))


@pytest.mark.parametrize(
    "vendor, product, expected",
    [
        ("0951", "1666", "DataTraveler 100 G3/G4/SE9 G2/50 Kyson (Kingston Technology)"),
        ("1002", "1222", "Unknown 1002:1222"),
        ("1000", "1111", "Unknown (Speed Tech Corp.)"),
    ],
)
def test_describe_with_vendor_and_product(parsed, vendor, product, expected):
    vendors, _ = parsed
    result = describe_with_vendor_and_product(int(vendor, 16), int(product, 16), vendors)
    assert result == expected


def test_parse_structure(parsed):
    vendors, classes = parsed
    assert set(vendors) == {0x0951, 0x1000}
    assert vendors[0x0951].name == "Kingston Technology"
    assert vendors[0x0951].products[0x1666].interfaces == {0: "Mass Storage"}
    assert set(classes) == {0x00, 0x03}
    assert classes[3].subclasses[1].protocols == {1: "Keyboard"}


def test_str_returns_names(parsed):
    vendors, classes = parsed
    assert str(vendors[0x1000]) == "Speed Tech Corp."
    assert str(classes[3].subclasses[1]) == "Boot Interface Subclass"


def test_describe_other_type(parsed):
    vendors, _ = parsed
    assert describe("device", vendors) == "Unknown (str)"


def test_describe_device_desc(parsed):
    vendors, _ = parsed
    desc = DeviceDesc(vendor=0x1000, product=0x153B)
    assert describe(desc, vendors) == "Example Reader (Speed Tech Corp.)"


@pytest.mark.parametrize(
    "cls, sub, proto, expected",
    [
        (3, 1, 1, "Human Interface Device (Boot Interface Subclass) Keyboard"),
        (3, 1, 2, "Human Interface Device (Boot Interface Subclass)"),
        (3, 5, 0, "Human Interface Device"),
        (255, 0, 0, "Unknown 255.0.0"),
    ],
)
def test_classify_device(parsed, cls, sub, proto, expected):
    _, classes = parsed
    desc = DeviceDesc(class_code=cls, subclass=sub, protocol=proto)
    assert classify(desc, classes) == expected


def test_classify_interface_setting(parsed):
    _, classes = parsed
    setting = InterfaceSetting(number=0, class_code=3, subclass=1, protocol=1)
    assert classify(setting, classes) == "Human Interface Device (Boot Interface Subclass) Keyboard"


def test_classify_other_type(parsed):
    _, classes = parsed
    assert classify(42, classes) == "Unknown (int)"


def test_product_without_vendor():
    with pytest.raises(ValueError, match="line 1: product line without vendor line"):
        Parser().parse_ids(io.StringIO("# header\n\t1234  Orphan\n"))


def test_interface_without_device():
    with pytest.raises(ValueError, match="interface line without device line"):
        Parser().parse_ids(io.StringIO("1234  Vendor\n\t\t01  Orphan\n"))


def test_too_many_vendor_levels():
    data = "1234  V\n\t0001  P\n\t\t02  I\n\t\t\t03  Deep\n"
    with pytest.raises(ValueError, match="line 3: too many levels of nesting for vendor block"):
        Parser().parse_ids(io.StringIO(data))


def test_malformatted_line():
    with pytest.raises(ValueError, match="malformatted line"):
        Parser().parse_ids(io.StringIO("1234 single space\n"))


@pytest.mark.parametrize("ident", ["zz", "0x12", "10000"])
def test_malformatted_id(ident):
    with pytest.raises(ValueError, match="malformatted id"):
        Parser().parse_ids(io.StringIO(f"{ident}  Name\n"))


def test_line_too_long():
    with pytest.raises(ValueError, match="line 0: line too long"):
        Parser().parse_ids(io.StringIO("1234  " + "x" * 600 + "\n"))


def test_parse_bytes_lines():
    vendors, classes = Parser().parse_ids([b"abcd  Bytes Vendor\r\n"])
    assert vendors[0xABCD].name == "Bytes Vendor"
    assert classes == {}