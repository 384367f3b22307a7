from tests.helpers.fakes import upload


class TestHealthAndMetrics:
    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    def test_metrics_exposes_admission_counters(self, client):
        client.post("/api/generate", **upload())
        response = client.get("/metrics")
        assert response.status_code == 200
        assert 'admission_decisions_total{outcome="admitted",reason="freeCount"}' in response.text
        assert "global_capacity_used" in response.text
