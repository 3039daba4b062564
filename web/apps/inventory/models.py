from django.db import models


class Stock(models.Model):
    """Per-SKU stock counters.

    ``available`` is stored (for cheap reads and filtering) and kept equal
    to ``quantity - reserved`` by every ledger write.
    """

    sku = models.CharField(max_length=64, unique=True)
    product_id = models.CharField(max_length=64, blank=True, default="")
    variant_id = models.CharField(max_length=64, blank=True, default="")
    quantity = models.PositiveIntegerField(default=0)
    reserved = models.PositiveIntegerField(default=0)
    available = models.PositiveIntegerField(default=0)
    low_stock_threshold = models.PositiveIntegerField(default=10)
    last_movement_at = models.DateTimeField(null=True, blank=True)
    is_deleted = models.BooleanField(default=False)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "stock"

    @property
    def is_low_stock(self) -> bool:
        return self.available <= self.low_stock_threshold

    def save(self, *args, **kwargs):
        self.available = max(0, self.quantity - self.reserved)
        super().save(*args, **kwargs)

    def __str__(self):
        return f"{self.sku} ({self.available}/{self.quantity})"


class StockMovement(models.Model):
    class Type(models.TextChoices):
        IN = "in"
        OUT = "out"
        ADJUSTMENT = "adjustment"
        RESERVE = "reserve"
        UNRESERVE = "unreserve"
        RETURN = "return"

    stock = models.ForeignKey(Stock, related_name="movements", on_delete=models.PROTECT)
    type = models.CharField(max_length=16, choices=Type.choices)
    # Signed: adjustments may be negative.
    quantity = models.IntegerField()
    reference = models.CharField(max_length=64, blank=True, default="")
    notes = models.TextField(blank=True, default="")
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "stock_movements"
        ordering = ["-id"]
