"""Map scanned shipping-label barcodes to candidate tracking codes.

Label barcodes carry more than the tracking number: USPS prefixes the
destination ZIP (application identifier 420) and FedEx wraps the number
in a longer service barcode.
"""

import re

# (420)ZIP then a tracking application identifier 91-95. Whether the
# identifier is part of the tracking number varies, so both are tried:
# with it first for 94, without it first otherwise.
USPS_BARCODE = re.compile(r"^\(?420\)?[\d-]{5,10}\(?(9[1-5])\)?(\d+)$")

# 34-digit FDX 1D barcode (last 14 digits, zero padded) or a 96 ground
# barcode (last 12 digits).
FEDEX_BARCODE = re.compile(r"^(?:[\d]{20}([\d]{14})$|^\(?96\)?\d+([\d]{12}))$")


def tracking_numbers_for_barcode(barcode: str) -> list[str]:
    """Tracking codes a barcode may correspond to, in lookup priority order.

    Examples:
        tracking_numbers_for_barcode("420123459405511899223197428490")
            -> ["9405511899223197428490", "05511899223197428490"]
        tracking_numbers_for_barcode("1Z999AA10123456784")
            -> ["1Z999AA10123456784"]
    """
    usps = USPS_BARCODE.match(barcode)
    if usps:
        tai, code = usps.group(1), usps.group(2)
        if tai == "94":
            return [f"{tai}{code}", code]
        return [code, f"{tai}{code}"]

    fedex = FEDEX_BARCODE.match(barcode)
    if fedex:
        fdx1d, fedex96 = fedex.group(1), fedex.group(2)
        if fedex96:
            return [fedex96]
        return [fdx1d.lstrip("0")]

    return [barcode]
