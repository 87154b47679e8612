"""
Test models for dj_settlement testing.

Stands in for the booking domain: the shipment resolver hook reads these rows.
"""

from django.db import models


class Shipment(models.Model):
    """A shipment created when a booking's winning bid is accepted."""

    shipment_id = models.CharField(max_length=64, unique=True)
    booking_id = models.CharField(max_length=64)
    bid_id = models.CharField(max_length=64)
    operator_id = models.CharField(max_length=64)
    bid_amount = models.DecimalField(max_digits=20, decimal_places=2)
    district_id = models.CharField(max_length=64, blank=True, null=True)
    region_id = models.CharField(max_length=64, blank=True, null=True)

    class Meta:
        app_label = "test_app"

    def __str__(self):
        return self.shipment_id
