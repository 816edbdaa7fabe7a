import unittest


def page(body, url="https://cars.example.com/bil/volvo-xc90"):
    from inventory_crawler.models import FetchResult

    return FetchResult(status=200, body=body, final_url=url)


class TestGenericExtractor(unittest.TestCase):
    def test_title_and_kronor_price(self):
        from inventory_crawler.extractors import extract

        result = extract(page("<html><head><title>2024 Volvo XC90</title></head><body><p>Pris: kr 450 000</p></body></html>"))

        self.assertEqual(result.title, "2024 Volvo XC90")
        self.assertEqual(result.price_amount, 450000)
        self.assertEqual(result.price_currency, "SEK")

    def test_og_image_comes_first_without_duplicates(self):
        from inventory_crawler.extractors import extract

        body = """
        <meta property="og:image" content="https://x/img.jpg">
        <img src="https://x/img.jpg">
        <img class="thumb" src="https://x/a.jpg">
        <img src="/b.jpg">
        """
        result = extract(page(body, url="https://x/car/1"))

        self.assertEqual(result.image_urls, ["https://x/img.jpg", "https://x/a.jpg", "https://x/b.jpg"])
        self.assertEqual(result.primary_image_url, "https://x/img.jpg")

    def test_title_falls_back_to_h1(self):
        from inventory_crawler.extractors import extract

        result = extract(page("<body><h1>Saab <em>9-3</em> Aero</h1></body>"))
        self.assertEqual(result.title, "Saab 9-3 Aero")

    def test_description_prefers_meta_then_long_paragraph(self):
        from inventory_crawler.extractors import extract

        long_text = "Välvårdad bil med full servicehistorik och nya sommardäck monterade i år."
        with_meta = f'<meta name="description" content="Kort beskrivning"><p>{long_text}</p>'
        without_meta = f"<p>Kort.</p><p>{long_text}</p>"

        self.assertEqual(extract(page(with_meta)).description, "Kort beskrivning")
        self.assertEqual(extract(page(without_meta)).description, long_text)

    def test_price_rules_in_order(self):
        from inventory_crawler.extractors.base import matching_rule
        from inventory_crawler.extractors.generic import GenericExtractor

        extractor = GenericExtractor()
        cases = [
            ("<span>129 900 kr</span>", "kronor_suffix", 129900),
            ("<span>Pris 129 900 SEK</span>", "sek_suffix", 129900),
            ('<script>var car = {"price": 99000};</script>', "price_key_value", 99000),
        ]
        for body, rule_name, amount in cases:
            with self.subTest(rule=rule_name):
                self.assertEqual(matching_rule(extractor.price_rules, body, ""), rule_name)
                self.assertEqual(extractor.extract_fields(body, "").price_amount, amount)

    def test_no_price_leaves_amount_empty(self):
        from inventory_crawler.extractors import extract

        result = extract(page("<title>Ring för pris</title>"))
        self.assertIsNone(result.price_amount)
        self.assertEqual(result.price_currency, "SEK")

    def test_attributes_first_key_wins_and_labels_need_a_colon(self):
        from inventory_crawler.extractors.generic import collect_attributes

        body = """
        <dl><dt>Färg</dt><dd>Svart</dd><dt>Färg</dt><dd>Röd</dd></dl>
        <p><strong>Drivning:</strong> AWD</p>
        <p><span>Ingen kolon</span> text</p>
        """
        self.assertEqual(collect_attributes(body), {"Färg": "Svart", "Drivning": "AWD"})

    def test_image_rules_cover_srcset_next_image_and_data_src(self):
        from inventory_crawler.extractors import extract

        body = """
        <img srcset="/img/a-400.jpg 400w, /img/a-800.jpg 800w">
        <img src="/_next/image?url=%2Fuploads%2Fcar.jpg&w=640">
        <img src="data:image/gif;base64,AAAA" data-src="/img/real.jpg">
        """
        result = extract(page(body, url="https://cars.example.com/bil/1"))

        self.assertIn("https://cars.example.com/img/a-400.jpg", result.image_urls)
        self.assertIn("https://cars.example.com/uploads/car.jpg", result.image_urls)
        self.assertIn("https://cars.example.com/img/real.jpg", result.image_urls)
        self.assertFalse(any(url.startswith("data:") for url in result.image_urls))
        self.assertEqual(len(result.image_urls), len(set(result.image_urls)))

    def test_json_image_array(self):
        from inventory_crawler.extractors.generic import json_images_array

        body = '<script>{"images": ["https:\\/\\/cdn.example.com\\/1.jpg", "not a url"]}</script>'
        self.assertEqual(json_images_array(body, ""), ["https://cdn.example.com/1.jpg"])

    def test_empty_body_yields_empty_result(self):
        from inventory_crawler.extractors import extract
        from inventory_crawler.models import ExtractResult

        self.assertEqual(extract(page("")), ExtractResult())


class TestRules(unittest.TestCase):
    def test_failing_rule_is_skipped(self):
        from inventory_crawler.extractors.base import Rule, first_match

        def boom(body, base_url):
            raise RuntimeError("bad markup")

        rules = [Rule("boom", boom), Rule("constant", lambda body, base_url: "ok")]
        self.assertIsNone(rules[0]("<p>", ""))
        self.assertEqual(first_match(rules, "<p>", ""), "ok")


class TestVehicleExtractor(unittest.TestCase):
    def test_swedish_labels_and_features(self):
        from inventory_crawler.extractors import extract

        features = "".join(f"<li>Tillval {n}</li>" for n in range(35))
        body = f"""
        <title>2019 Volvo V60</title>
        <ul class="specs">
          <li><span>Miltal</span> <span>1 200 mil</span></li>
          <li>Bränsle: Diesel</li>
          <li>Årsmodell: 2019</li>
          <li>Modell: V60</li>
        </ul>
        <dl><dt>Växellåda</dt><dd>Automat</dd></dl>
        <h2>Utrustning</h2>
        <ul>{features}</ul>
        """
        result = extract(page(body), vertical="vehicle")
        attrs = result.attributes

        self.assertEqual(attrs["miltal"], "1 200 mil")
        self.assertEqual(attrs["bransle"], "Diesel")
        self.assertEqual(attrs["arsmodell"], "2019")
        self.assertEqual(attrs["modell"], "V60")
        self.assertEqual(attrs["vaxellada"], "Automat")
        self.assertEqual(len(attrs["features"]), 30)
        self.assertEqual(attrs["features"][0], "Tillval 0")
        self.assertEqual(result.title, "2019 Volvo V60")


class TestExtractorRegistry(unittest.TestCase):
    def test_registry_lists_builtin_verticals(self):
        from inventory_crawler.extractors import list_extractors

        self.assertEqual(list_extractors(), ["generic", "vehicle"])

    def test_unknown_extractor_name_raises(self):
        from inventory_crawler.extractors import get_extractor

        with self.assertRaises(ValueError):
            get_extractor("boats")

    def test_unknown_vertical_falls_back_to_generic(self):
        from inventory_crawler.extractors import extract

        result = extract(page("<title>Boat</title>"), vertical="boats")
        self.assertEqual(result.title, "Boat")


if __name__ == "__main__":
    unittest.main()
